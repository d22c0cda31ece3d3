from app.platform.security.context import AuthContext
from app.platform.security.models import PolicyRule, PolicySetVersion
from app.platform.security.policies import (
    CompiledPolicySet,
    DbPolicySource,
    PolicyEffect,
    PolicyGate,
    PolicySnapshot,
    PolicySource,
    StaticPolicySource,
    compile_policy_set,
)
from app.platform.security.schemas import PolicyCheck, PolicyDecision

__all__ = [
    "AuthContext",
    "PolicyRule",
    "PolicySetVersion",
    "CompiledPolicySet",
    "DbPolicySource",
    "PolicyEffect",
    "PolicyGate",
    "PolicySnapshot",
    "PolicySource",
    "StaticPolicySource",
    "compile_policy_set",
    "PolicyCheck",
    "PolicyDecision",
]
