from app.platform.lifecycle.models import (
    EntityLifecycleEvent,
    EntityLifecycleInstance,
    Lifecycle,
    LifecycleRoute,
    LifecycleState,
    LifecycleTransition,
)

__all__ = [
    "Lifecycle",
    "LifecycleState",
    "LifecycleTransition",
    "LifecycleRoute",
    "EntityLifecycleInstance",
    "EntityLifecycleEvent",
]
