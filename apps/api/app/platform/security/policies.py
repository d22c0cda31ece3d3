from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from threading import RLock
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from app.metrics import (
    observe_policy_cache_hit,
    observe_policy_cache_miss,
    observe_policy_decision,
    observe_policy_malformed_rule,
)
from app.platform.conditions import (
    Condition,
    ConditionAll,
    ConditionAny,
    ConditionNot,
    build_evaluation_view,
    condition_leaf_count,
    evaluate,
    parse_condition,
)
from app.platform.errors import LifecycleError
from app.platform.security.context import AuthContext
from app.platform.security.models import PolicyRule, PolicySetVersion
from app.platform.security.schemas import PolicyCheck, PolicyDecision, PolicyTraceEntry


logger = logging.getLogger("app.policy")

WILDCARD = "*"


class PolicyEffect(StrEnum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass(slots=True)
class PolicySnapshot:
    version: int
    rules: list[dict[str, Any]]


class PolicySource(Protocol):
    """Where the gate reads rule definitions from."""

    def load(self, tenant_id: str, resource: str) -> PolicySnapshot:
        ...


class StaticPolicySource:
    """In-memory rule list, used for bootstrapping and tests."""

    def __init__(self, rules: Iterable[dict[str, Any]] | None = None, *, version: int = 1) -> None:
        self._rules = [dict(rule) for rule in rules or []]
        self._version = version
        self._lock = RLock()

    def replace(self, rules: Iterable[dict[str, Any]]) -> None:
        with self._lock:
            self._rules = [dict(rule) for rule in rules]
            self._version += 1

    def load(self, tenant_id: str, resource: str) -> PolicySnapshot:
        with self._lock:
            rules = [
                rule
                for rule in self._rules
                if rule.get("tenant_id") in {None, tenant_id} and rule.get("resource", WILDCARD) in {resource, WILDCARD}
            ]
            return PolicySnapshot(version=self._version, rules=rules)


class DbPolicySource:
    """Loads active ``PolicyRule`` rows and the policy-set version for a resource."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def load(self, tenant_id: str, resource: str) -> PolicySnapshot:
        resources = [resource, WILDCARD]
        with self._session_factory() as session:
            rows = session.scalars(
                select(PolicyRule).where(
                    PolicyRule.tenant_id == tenant_id,
                    PolicyRule.resource.in_(resources),
                    PolicyRule.is_active.is_(True),
                )
            ).all()
            versions = session.scalars(
                select(PolicySetVersion.version).where(
                    PolicySetVersion.tenant_id == tenant_id,
                    PolicySetVersion.resource.in_(resources),
                )
            ).all()

        rules = [
            {
                "id": row.id,
                "code": row.code,
                "resource": row.resource,
                "action": row.action,
                "effect": row.effect,
                "priority": row.priority,
                "roles": row.roles_json,
                "condition": row.condition_json,
                "fields": row.fields_json,
            }
            for row in rows
        ]
        # each edit bumps one counter, so the sum is monotonic across both rows
        return PolicySnapshot(version=sum(versions), rules=rules)


@dataclass(slots=True)
class CompiledRule:
    code: str
    action: str
    effect: PolicyEffect
    priority: int
    roles: frozenset[str]
    condition: Condition | None
    fields: tuple[str, ...] | None
    rule_id: Any = None
    malformed: str | None = None
    record_bound: bool = False

    def sort_key(self) -> tuple[int, int, int, int, str]:
        return (
            self.priority,
            0 if self.effect == PolicyEffect.DENY else 1,
            0 if self.action != WILDCARD else 1,
            -condition_leaf_count(self.condition),
            self.code,
        )

    def subject_matches(self, ctx: AuthContext) -> bool:
        if not self.roles:
            return True
        return bool(self.roles.intersection(ctx.roles) or self.roles.intersection(ctx.permissions))


@dataclass(slots=True)
class CompiledPolicySet:
    tenant_id: str
    resource: str
    version: int
    by_action: dict[str, list[CompiledRule]] = field(default_factory=dict)
    wildcard: list[CompiledRule] = field(default_factory=list)
    compiled_at: float = 0.0

    def candidates(self, action: str) -> list[CompiledRule]:
        return self.by_action.get(action, self.wildcard)

    def is_record_bound(self, action: str) -> bool:
        return any(rule.record_bound for rule in self.candidates(action))


def _references_record(condition: Condition | None) -> bool:
    if condition is None:
        return False
    if isinstance(condition, ConditionAll):
        return any(_references_record(item) for item in condition.all)
    if isinstance(condition, ConditionAny):
        return any(_references_record(item) for item in condition.any)
    if isinstance(condition, ConditionNot):
        return _references_record(condition.not_)
    return not condition.path.startswith("ctx.") and condition.path not in {"action", "resource"}


def compile_policy_set(tenant_id: str, resource: str, snapshot: PolicySnapshot, *, now: float = 0.0) -> CompiledPolicySet:
    compiled: list[CompiledRule] = []
    for raw in snapshot.rules:
        code = str(raw.get("code") or raw.get("id") or "unnamed")
        effect_raw = str(raw.get("effect") or "").lower()
        rule = CompiledRule(
            code=code,
            action=str(raw.get("action") or WILDCARD),
            effect=PolicyEffect.DENY if effect_raw == "deny" else PolicyEffect.ALLOW,
            priority=0,
            roles=frozenset(str(role) for role in raw.get("roles") or []),
            condition=None,
            fields=None,
            rule_id=raw.get("id"),
        )
        try:
            if effect_raw not in {"allow", "deny"}:
                raise LifecycleError(f"unknown effect '{effect_raw}'")
            try:
                rule.priority = int(raw.get("priority") or 0)
            except (TypeError, ValueError) as exc:
                raise LifecycleError("priority must be an integer") from exc
            rule.condition = parse_condition(raw.get("condition"))
            fields = raw.get("fields")
            if fields is not None:
                if not isinstance(fields, list) or not all(isinstance(item, str) for item in fields):
                    raise LifecycleError("fields must be a list of strings")
                rule.fields = tuple(fields)
            rule.record_bound = _references_record(rule.condition)
        except LifecycleError as exc:
            # fail closed: the rule stays as a deny that matches its subjects
            rule.malformed = exc.message
            rule.effect = PolicyEffect.DENY
            observe_policy_malformed_rule(resource)
            logger.warning(
                "policy_rule_malformed",
                extra={"resource": resource, "rule_id": code, "error": exc.message},
            )
        compiled.append(rule)

    compiled.sort(key=CompiledRule.sort_key)
    wildcard = [rule for rule in compiled if rule.action == WILDCARD]
    by_action: dict[str, list[CompiledRule]] = {}
    for action in {rule.action for rule in compiled if rule.action != WILDCARD}:
        by_action[action] = [rule for rule in compiled if rule.action in {action, WILDCARD}]

    return CompiledPolicySet(
        tenant_id=tenant_id,
        resource=resource,
        version=snapshot.version,
        by_action=by_action,
        wildcard=wildcard,
        compiled_at=now,
    )


_DecisionKey = tuple[str, str, str, int, str]


class PolicyGate:
    """Explainable authorization with per-resource compiled rule sets.

    Compiled sets and decisions are cached by this object only; callers
    mutate the caches exclusively through ``invalidate_policy_cache``.
    Evaluation never raises: malformed rules and unexpected failures
    produce a deny decision and a log line.
    """

    def __init__(
        self,
        source: PolicySource,
        *,
        cache_ttl_seconds: float = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._ttl = cache_ttl_seconds
        self._clock = clock
        self._lock = RLock()
        self._compiled: dict[tuple[str, str], CompiledPolicySet] = {}
        self._decisions: dict[_DecisionKey, tuple[float, PolicyDecision]] = {}
        self._generations: dict[str, int] = {}

    def authorize(
        self,
        action: str,
        resource: str,
        ctx: AuthContext,
        record: dict[str, Any] | None = None,
    ) -> PolicyDecision:
        try:
            policy_set = self._policy_set(ctx, resource)
            return self._decide(policy_set, action, resource, ctx, record)
        except Exception as exc:
            logger.exception(
                "policy_evaluation_failed",
                extra={"resource": resource, "action": action, "error": str(exc)},
            )
            observe_policy_decision(resource, PolicyEffect.DENY.value)
            return PolicyDecision(
                allowed=False,
                effect=PolicyEffect.DENY.value,
                reason=f"Policy evaluation failed for {action}",
                action=action,
                resource=resource,
            )

    def authorize_many(
        self,
        checks: Iterable[PolicyCheck | tuple[str, str]],
        ctx: AuthContext,
        record: dict[str, Any] | None = None,
    ) -> dict[str, PolicyDecision]:
        grouped: dict[str, list[str]] = {}
        for check in checks:
            action, resource = (check.action, check.resource) if isinstance(check, PolicyCheck) else check
            grouped.setdefault(resource, []).append(action)

        results: dict[str, PolicyDecision] = {}
        for resource, actions in grouped.items():
            try:
                policy_set = self._policy_set(ctx, resource)
            except Exception as exc:
                logger.exception("policy_compile_failed", extra={"resource": resource, "error": str(exc)})
                policy_set = None
            for action in actions:
                key = f"{action}:{resource}"
                if policy_set is None:
                    results[key] = PolicyDecision(
                        allowed=False,
                        effect=PolicyEffect.DENY.value,
                        reason=f"Policy evaluation failed for {action}",
                        action=action,
                        resource=resource,
                    )
                    continue
                try:
                    results[key] = self._decide(policy_set, action, resource, ctx, record)
                except Exception as exc:
                    logger.exception("policy_evaluation_failed", extra={"resource": resource, "action": action, "error": str(exc)})
                    results[key] = PolicyDecision(
                        allowed=False,
                        effect=PolicyEffect.DENY.value,
                        reason=f"Policy evaluation failed for {action}",
                        action=action,
                        resource=resource,
                    )
        return results

    def get_allowed_fields(
        self,
        action: str,
        resource: str,
        ctx: AuthContext,
        record: dict[str, Any] | None = None,
    ) -> list[str] | None:
        """``None`` means unrestricted; an empty list means no field is allowed."""

        if ctx.is_super_admin:
            return None
        try:
            policy_set = self._policy_set(ctx, resource)
        except Exception as exc:
            logger.exception("policy_compile_failed", extra={"resource": resource, "error": str(exc)})
            return []

        view = build_evaluation_view(ctx.as_view(), record, action=action, resource=resource)
        allowed: set[str] = set()
        matched_allow = False
        for rule in policy_set.candidates(action):
            if not rule.subject_matches(ctx):
                continue
            if rule.malformed is not None:
                return []
            if not evaluate(rule.condition, view):
                continue
            if rule.effect == PolicyEffect.DENY:
                return []
            matched_allow = True
            if rule.fields is None:
                return None
            allowed.update(rule.fields)
        if not matched_allow:
            return []
        return sorted(allowed)

    def invalidate_policy_cache(self, resource: str | None = None, tenant_id: str | None = None) -> int:
        """Drop compiled sets and cached decisions; returns the number of evicted entries."""

        with self._lock:
            def _hit(entry_tenant: str, entry_resource: str) -> bool:
                if tenant_id is not None and entry_tenant != tenant_id:
                    return False
                return resource is None or resource == WILDCARD or entry_resource == resource

            compiled_keys = [key for key in self._compiled if _hit(key[0], key[1])]
            decision_keys = [key for key in self._decisions if _hit(key[0], key[1])]
            for key in compiled_keys:
                del self._compiled[key]
            for key in decision_keys:
                del self._decisions[key]
            generation_key = resource or WILDCARD
            self._generations[generation_key] = self._generations.get(generation_key, 0) + 1
            self._generations[WILDCARD] = self._generations.get(WILDCARD, 0) + 1
            evicted = len(compiled_keys) + len(decision_keys)

        logger.info("policy_cache_invalidated", extra={"resource": resource or WILDCARD, "evicted": evicted})
        return evicted

    def _expired(self, stored_at: float) -> bool:
        return self._ttl > 0 and (self._clock() - stored_at) > self._ttl

    def _policy_set(self, ctx: AuthContext, resource: str) -> CompiledPolicySet:
        tenant_id = ctx.tenant_id or ""
        key = (tenant_id, resource)
        with self._lock:
            cached = self._compiled.get(key)
            if cached is not None and not self._expired(cached.compiled_at):
                return cached
            generation = (self._generations.get(resource, 0), self._generations.get(WILDCARD, 0))

        snapshot = self._source.load(tenant_id, resource)
        compiled = compile_policy_set(tenant_id, resource, snapshot, now=self._clock())

        with self._lock:
            current = (self._generations.get(resource, 0), self._generations.get(WILDCARD, 0))
            # an invalidation raced with this compile; hand out the result without caching it
            if current == generation:
                self._compiled[key] = compiled
        return compiled

    def _decide(
        self,
        policy_set: CompiledPolicySet,
        action: str,
        resource: str,
        ctx: AuthContext,
        record: dict[str, Any] | None,
    ) -> PolicyDecision:
        cacheable = record is None or not policy_set.is_record_bound(action)
        key: _DecisionKey = (policy_set.tenant_id, resource, action, policy_set.version, ctx.fingerprint())
        if cacheable:
            with self._lock:
                entry = self._decisions.get(key)
            if entry is not None and not self._expired(entry[0]):
                observe_policy_cache_hit()
                return entry[1].model_copy(deep=True)
            observe_policy_cache_miss()

        decision = self._evaluate(policy_set, action, resource, ctx, record)
        observe_policy_decision(resource, decision.effect)
        if cacheable:
            with self._lock:
                if self._compiled.get((policy_set.tenant_id, resource)) is policy_set:
                    self._decisions[key] = (self._clock(), decision.model_copy(deep=True))
        return decision

    def _evaluate(
        self,
        policy_set: CompiledPolicySet,
        action: str,
        resource: str,
        ctx: AuthContext,
        record: dict[str, Any] | None,
    ) -> PolicyDecision:
        base: dict[str, Any] = {"action": action, "resource": resource, "policy_version": policy_set.version}
        if ctx.is_super_admin:
            return PolicyDecision(allowed=True, effect=PolicyEffect.ALLOW.value, reason="Super admin", **base)
        if not ctx.tenant_id:
            return PolicyDecision(allowed=False, effect=PolicyEffect.DENY.value, reason="Tenant context is required", **base)

        view = build_evaluation_view(ctx.as_view(), record, action=action, resource=resource)
        trace: list[PolicyTraceEntry] = []
        for rule in policy_set.candidates(action):
            if not rule.subject_matches(ctx):
                trace.append(PolicyTraceEntry(rule=rule.code, effect=rule.effect.value, outcome="role_mismatch"))
                continue
            if rule.malformed is not None:
                trace.append(PolicyTraceEntry(rule=rule.code, effect=rule.effect.value, outcome="malformed"))
                return PolicyDecision(
                    allowed=False,
                    effect=PolicyEffect.DENY.value,
                    matched_rule=rule.code,
                    matched_rule_id=rule.rule_id,
                    reason=f"Policy rule '{rule.code}' is malformed",
                    trace=trace,
                    **base,
                )
            if not evaluate(rule.condition, view):
                trace.append(PolicyTraceEntry(rule=rule.code, effect=rule.effect.value, outcome="condition_false"))
                continue

            trace.append(PolicyTraceEntry(rule=rule.code, effect=rule.effect.value, outcome="matched"))
            if rule.effect == PolicyEffect.DENY:
                return PolicyDecision(
                    allowed=False,
                    effect=PolicyEffect.DENY.value,
                    matched_rule=rule.code,
                    matched_rule_id=rule.rule_id,
                    reason=f"Denied by policy rule '{rule.code}' for {action}",
                    trace=trace,
                    **base,
                )
            return PolicyDecision(
                allowed=True,
                effect=PolicyEffect.ALLOW.value,
                matched_rule=rule.code,
                matched_rule_id=rule.rule_id,
                reason=f"Allowed by policy rule '{rule.code}'",
                field_restrictions=list(rule.fields) if rule.fields is not None else None,
                trace=trace,
                **base,
            )

        return PolicyDecision(
            allowed=False,
            effect=PolicyEffect.DENY.value,
            reason=f"Missing required operation: {action}",
            trace=trace,
            **base,
        )
