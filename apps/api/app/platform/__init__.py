from app.platform.errors import ErrorCode, LifecycleError

__all__ = ["ErrorCode", "LifecycleError"]
