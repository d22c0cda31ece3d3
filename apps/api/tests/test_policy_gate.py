from __future__ import annotations

import logging

import pytest
from sqlalchemy.orm import Session, sessionmaker

from app.platform.security.context import AuthContext
from app.platform.security.policies import DbPolicySource, PolicyGate, StaticPolicySource
from app.platform.security.schemas import PolicyCheck, PolicyRuleCreate, PolicyRuleUpdate
from app.platform.security.service import PolicyAdminService

from conftest import TENANT, make_ctx, published


def _gate(rules: list[dict]) -> PolicyGate:
    return PolicyGate(StaticPolicySource(rules))


def test_no_matching_rule_denies_with_missing_operation_reason() -> None:
    gate = _gate([])

    decision = gate.authorize("invoice.submit", "invoice", make_ctx())

    assert decision.allowed is False
    assert decision.effect == "deny"
    assert decision.matched_rule is None
    assert decision.reason == "Missing required operation: invoice.submit"


def test_first_match_is_recorded_for_explainability() -> None:
    gate = _gate(
        [
            {"code": "managers", "resource": "invoice", "action": "invoice.submit", "effect": "allow", "priority": 5, "roles": ["manager"]},
            {"code": "clerks", "resource": "invoice", "action": "invoice.submit", "effect": "allow", "priority": 10, "roles": ["clerk"]},
        ]
    )

    decision = gate.authorize("invoice.submit", "invoice", make_ctx())

    assert decision.allowed is True
    assert decision.matched_rule == "clerks"
    assert [entry.outcome for entry in decision.trace] == ["role_mismatch", "matched"]


def test_lower_priority_number_wins_and_deny_breaks_ties() -> None:
    gate = _gate(
        [
            {"code": "allow-all", "resource": "invoice", "action": "*", "effect": "allow", "priority": 1},
            {
                "code": "deny-large",
                "resource": "invoice",
                "action": "invoice.submit",
                "effect": "deny",
                "priority": 500,
                "condition": {"path": "amount", "op": "gt", "value": 10000},
            },
        ]
    )
    ctx = make_ctx()

    small = gate.authorize("invoice.submit", "invoice", ctx, {"amount": 10})
    large = gate.authorize("invoice.submit", "invoice", ctx, {"amount": 50000})

    assert small.allowed is True
    assert small.matched_rule == "allow-all"
    assert large.allowed is True
    assert large.matched_rule == "allow-all"

    tied = _gate(
        [
            {"code": "allow-submit", "resource": "invoice", "action": "invoice.submit", "effect": "allow", "priority": 10},
            {"code": "deny-submit", "resource": "invoice", "action": "invoice.submit", "effect": "deny", "priority": 10},
        ]
    )
    decision = tied.authorize("invoice.submit", "invoice", ctx)
    assert decision.allowed is False
    assert decision.matched_rule == "deny-submit"
    assert "deny-submit" in decision.reason


def test_priority_one_allow_beats_block_all_deny() -> None:
    gate = _gate(
        [
            {"code": "block-all", "resource": "invoice", "action": "*", "effect": "deny", "priority": 100},
            {"code": "clerk-submit", "resource": "invoice", "action": "invoice.submit", "effect": "allow", "priority": 1, "roles": ["clerk"]},
        ]
    )

    submit = gate.authorize("invoice.submit", "invoice", make_ctx())
    void = gate.authorize("invoice.void", "invoice", make_ctx())
    viewer = gate.authorize("invoice.submit", "invoice", make_ctx("viewer-1", roles=["viewer"]))

    assert submit.allowed is True
    assert submit.matched_rule == "clerk-submit"
    assert void.allowed is False
    assert void.matched_rule == "block-all"
    assert viewer.allowed is False
    assert viewer.matched_rule == "block-all"


def test_exact_action_before_wildcard_and_conditions_before_unconditional() -> None:
    gate = _gate(
        [
            {"code": "any-action", "resource": "invoice", "action": "*", "effect": "allow", "priority": 10, "fields": ["id"]},
            {"code": "exact", "resource": "invoice", "action": "invoice.view", "effect": "allow", "priority": 10, "fields": ["id", "amount"]},
            {
                "code": "exact-conditional",
                "resource": "invoice",
                "action": "invoice.view",
                "effect": "allow",
                "priority": 10,
                "condition": {"path": "ctx.department", "op": "eq", "value": "finance"},
                "fields": ["id", "amount", "iban"],
            },
        ]
    )

    finance = gate.authorize("invoice.view", "invoice", make_ctx(attributes={"department": "finance"}))
    sales = gate.authorize("invoice.view", "invoice", make_ctx(attributes={"department": "sales"}))
    other = gate.authorize("invoice.print", "invoice", make_ctx())

    assert finance.matched_rule == "exact-conditional"
    assert sales.matched_rule == "exact"
    assert sales.field_restrictions == ["id", "amount"]
    assert other.matched_rule == "any-action"


def test_authorize_is_deterministic_until_invalidated() -> None:
    source = StaticPolicySource(
        [{"code": "clerks", "resource": "invoice", "action": "invoice.submit", "effect": "allow", "priority": 10, "roles": ["clerk"]}]
    )
    gate = PolicyGate(source)
    ctx = make_ctx()

    first = gate.authorize("invoice.submit", "invoice", ctx)
    source.replace([])
    second = gate.authorize("invoice.submit", "invoice", ctx)

    assert first == second
    assert second.allowed is True

    evicted = gate.invalidate_policy_cache("invoice", tenant_id=TENANT)
    third = gate.authorize("invoice.submit", "invoice", ctx)

    assert evicted >= 1
    assert third.allowed is False
    assert third.reason == "Missing required operation: invoice.submit"


def test_invalidation_is_scoped_to_resource() -> None:
    gate = _gate(
        [
            {"code": "a", "resource": "invoice", "action": "*", "effect": "allow"},
            {"code": "b", "resource": "order", "action": "*", "effect": "allow"},
        ]
    )
    ctx = make_ctx()
    gate.authorize("read", "invoice", ctx)
    gate.authorize("read", "order", ctx)

    assert gate.invalidate_policy_cache("invoice") == 2
    assert gate.invalidate_policy_cache("invoice") == 0
    assert gate.invalidate_policy_cache("order") == 2


def test_malformed_rule_fails_closed_and_logs(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING)
    gate = _gate(
        [
            {"code": "allow-clerks", "resource": "invoice", "action": "invoice.submit", "effect": "allow", "priority": 1, "roles": ["clerk"]},
            {"code": "broken", "resource": "invoice", "action": "invoice.submit", "effect": "allow", "condition": {"path": "x", "op": "bogus"}},
        ]
    )

    decision = gate.authorize("invoice.submit", "invoice", make_ctx())

    assert decision.allowed is False
    assert decision.matched_rule == "broken"
    assert "malformed" in decision.reason
    assert any(record.getMessage() == "policy_rule_malformed" and getattr(record, "rule_id", None) == "broken" for record in caplog.records)
    assert gate.get_allowed_fields("invoice.submit", "invoice", make_ctx()) == []


def test_source_failure_is_a_deny_not_an_exception() -> None:
    class ExplodingSource:
        def load(self, tenant_id: str, resource: str):  # type: ignore[no-untyped-def]
            raise RuntimeError("policy store unavailable")

    gate = PolicyGate(ExplodingSource())

    decision = gate.authorize("invoice.submit", "invoice", make_ctx())
    many = gate.authorize_many([("invoice.submit", "invoice")], make_ctx())

    assert decision.allowed is False
    assert decision.reason == "Policy evaluation failed for invoice.submit"
    assert many["invoice.submit:invoice"].allowed is False


def test_super_admin_and_missing_tenant() -> None:
    gate = _gate([])

    admin = gate.authorize("anything", "invoice", make_ctx("root", roles=[], is_super_admin=True))
    no_tenant = gate.authorize("anything", "invoice", AuthContext(user_id="someone", roles=["clerk"]))

    assert admin.allowed is True
    assert admin.reason == "Super admin"
    assert no_tenant.allowed is False
    assert no_tenant.reason == "Tenant context is required"


def test_authorize_many_groups_by_resource_and_keys_results() -> None:
    gate = _gate(
        [
            {"code": "inv", "resource": "invoice", "action": "invoice.submit", "effect": "allow", "roles": ["clerk"]},
            {"code": "ord", "resource": "order", "action": "order.cancel", "effect": "deny", "roles": ["clerk"]},
        ]
    )

    results = gate.authorize_many(
        [PolicyCheck(action="invoice.submit", resource="invoice"), ("order.cancel", "order"), ("invoice.void", "invoice")],
        make_ctx(),
    )

    assert set(results) == {"invoice.submit:invoice", "order.cancel:order", "invoice.void:invoice"}
    assert results["invoice.submit:invoice"].allowed is True
    assert results["order.cancel:order"].matched_rule == "ord"
    assert results["invoice.void:invoice"].allowed is False


def test_allowed_fields() -> None:
    gate = _gate(
        [
            {"code": "clerk-fields", "resource": "invoice", "action": "invoice.edit", "effect": "allow", "roles": ["clerk"], "fields": ["notes", "amount"]},
            {"code": "lead-fields", "resource": "invoice", "action": "invoice.edit", "effect": "allow", "roles": ["lead"], "fields": ["due_date"]},
            {"code": "manager-all", "resource": "invoice", "action": "invoice.edit", "effect": "allow", "roles": ["manager"]},
            {"code": "intern-deny", "resource": "invoice", "action": "invoice.edit", "effect": "deny", "roles": ["intern"]},
        ]
    )

    assert gate.get_allowed_fields("invoice.edit", "invoice", make_ctx(roles=["clerk", "lead"])) == ["amount", "due_date", "notes"]
    assert gate.get_allowed_fields("invoice.edit", "invoice", make_ctx(roles=["manager"])) is None
    assert gate.get_allowed_fields("invoice.edit", "invoice", make_ctx(roles=["intern", "manager"])) == []
    assert gate.get_allowed_fields("invoice.edit", "invoice", make_ctx(roles=["guest"])) == []


def test_record_bound_decisions_are_not_cached() -> None:
    gate = _gate(
        [
            {
                "code": "small-only",
                "resource": "invoice",
                "action": "invoice.submit",
                "effect": "allow",
                "condition": {"path": "record.amount", "op": "lt", "value": 1000},
            }
        ]
    )
    ctx = make_ctx()

    assert gate.authorize("invoice.submit", "invoice", ctx, {"amount": 10}).allowed is True
    assert gate.authorize("invoice.submit", "invoice", ctx, {"amount": 5000}).allowed is False


def test_admin_edits_bump_version_and_invalidate(session_factory: sessionmaker[Session], db_session: Session) -> None:
    gate = PolicyGate(DbPolicySource(session_factory))
    admin = PolicyAdminService(gate)
    editor = make_ctx("policy-admin", roles=["policy.admin"])
    clerk = make_ctx()

    assert gate.authorize("invoice.submit", "invoice", clerk).allowed is False

    rule = admin.create_rule(
        db_session,
        editor,
        PolicyRuleCreate(code="clerk-submit", resource="invoice", action="invoice.submit", roles=["clerk"], priority=10),
    )
    allowed = gate.authorize("invoice.submit", "invoice", clerk)
    assert allowed.allowed is True
    assert allowed.matched_rule_id == rule.id
    assert allowed.policy_version == 1

    admin.update_rule(db_session, editor, rule.id, PolicyRuleUpdate(effect="deny"))
    denied = gate.authorize("invoice.submit", "invoice", clerk)
    assert denied.allowed is False
    assert denied.policy_version == 2

    assert len(published("policy.invalidated")) == 2
    assert [row.code for row in admin.list_rules(db_session, editor, resource="invoice")] == ["clerk-submit"]
