from __future__ import annotations

import json
import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from app.platform.errors import ValidationError


ConditionOp = Literal[
    "eq",
    "neq",
    "gt",
    "gte",
    "lt",
    "lte",
    "in",
    "not_in",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "matches",
    "exists",
    "not_exists",
    "empty",
    "not_empty",
    "between",
    "date_before",
    "date_after",
]

_OP_ALIASES = {
    "ne": "neq",
    "nin": "not_in",
    "regex": "matches",
    "is_empty": "empty",
    "is_not_empty": "not_empty",
}


class ConditionLeaf(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(min_length=1)
    op: ConditionOp
    value: Any = None


class ConditionAll(BaseModel):
    model_config = ConfigDict(extra="forbid")

    all: list["Condition"]


class ConditionAny(BaseModel):
    model_config = ConfigDict(extra="forbid")

    any: list["Condition"]


class ConditionNot(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    not_: "Condition" = Field(alias="not")


Condition = ConditionLeaf | ConditionAll | ConditionAny | ConditionNot

ConditionAll.model_rebuild()
ConditionAny.model_rebuild()
ConditionNot.model_rebuild()

_CONDITION_ADAPTER: TypeAdapter[Condition] = TypeAdapter(Condition)


def normalize_condition(raw: Any) -> Any:
    """Rewrite the ``{"operator": "and", "conditions": [...]}`` form into all/any/not."""

    if isinstance(raw, list):
        return {"all": [normalize_condition(item) for item in raw]}
    if not isinstance(raw, dict):
        return raw

    if "conditions" in raw and set(raw) <= {"operator", "conditions"}:
        operator = str(raw.get("operator") or "and").lower()
        items = [normalize_condition(item) for item in raw.get("conditions") or []]
        if operator == "or":
            return {"any": items}
        if operator == "not":
            return {"not": items[0] if len(items) == 1 else {"all": items}}
        return {"all": items}

    if "all" in raw and isinstance(raw["all"], list):
        return {"all": [normalize_condition(item) for item in raw["all"]]}
    if "any" in raw and isinstance(raw["any"], list):
        return {"any": [normalize_condition(item) for item in raw["any"]]}
    if "not" in raw and len(raw) == 1:
        return {"not": normalize_condition(raw["not"])}

    leaf = dict(raw)
    if "field" in leaf and "path" not in leaf:
        leaf["path"] = leaf.pop("field")
    if "operator" in leaf and "op" not in leaf:
        leaf["op"] = leaf.pop("operator")
    op = leaf.get("op")
    if isinstance(op, str):
        leaf["op"] = _OP_ALIASES.get(op.lower(), op.lower())
    return leaf


def parse_condition(raw: Any) -> Condition | None:
    """Validate a stored condition document. ``None`` or ``{}`` means "always matches"."""

    if raw is None or raw == {} or raw == []:
        return None
    if isinstance(raw, (ConditionLeaf, ConditionAll, ConditionAny, ConditionNot)):
        return raw
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"condition is not valid JSON: {exc.msg}") from exc
    try:
        return _CONDITION_ADAPTER.validate_python(normalize_condition(raw))
    except PydanticValidationError as exc:
        raise ValidationError("malformed condition", details={"errors": exc.errors(include_url=False)}) from exc


def condition_to_dict(condition: Condition | None) -> dict[str, Any] | None:
    if condition is None:
        return None
    return _CONDITION_ADAPTER.dump_python(condition, by_alias=True, mode="json")


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def condition_leaf_count(condition: Condition | None) -> int:
    if condition is None:
        return 0
    if isinstance(condition, ConditionAll):
        return sum(condition_leaf_count(item) for item in condition.all)
    if isinstance(condition, ConditionAny):
        return sum(condition_leaf_count(item) for item in condition.any)
    if isinstance(condition, ConditionNot):
        return condition_leaf_count(condition.not_)
    return 1


def build_evaluation_view(ctx: dict[str, Any] | None, record: dict[str, Any] | None, **extra: Any) -> dict[str, Any]:
    """Flatten actor context and record into one lookup view.

    Record fields are reachable both bare (``amount``) and prefixed
    (``record.amount``); actor attributes live under ``ctx``.
    """

    record_view = dict(record or {})
    view: dict[str, Any] = dict(record_view)
    view.update(extra)
    view["record"] = record_view
    view["ctx"] = dict(ctx or {})
    return view


def resolve_path(view: Any, path: str) -> tuple[bool, Any]:
    current: Any = view
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return False, None
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return False, None
            current = current[index]
        else:
            return False, None
    return True, current


def evaluate(condition: Condition | None, view: dict[str, Any]) -> bool:
    if condition is None:
        return True
    if isinstance(condition, ConditionAll):
        return all(evaluate(item, view) for item in condition.all)
    if isinstance(condition, ConditionAny):
        return any(evaluate(item, view) for item in condition.any)
    if isinstance(condition, ConditionNot):
        return not evaluate(condition.not_, view)
    return _evaluate_leaf(condition, view)


def _evaluate_leaf(leaf: ConditionLeaf, view: dict[str, Any]) -> bool:
    found, current = resolve_path(view, leaf.path)
    op = leaf.op
    target = leaf.value

    if op == "exists":
        return found and current is not None
    if op == "not_exists":
        return not found or current is None
    if op == "empty":
        return _is_empty(current)
    if op == "not_empty":
        return not _is_empty(current)

    if op == "eq":
        return found and _equals(current, target)
    if op == "neq":
        return not found or not _equals(current, target)
    if op in {"in", "not_in"}:
        if not isinstance(target, (list, tuple, set)):
            return op == "not_in"
        member = found and any(_equals(current, item) for item in target)
        return member if op == "in" else not member
    if op in {"contains", "not_contains"}:
        contained = _contains(current, target)
        return contained if op == "contains" else not contained
    if op == "starts_with":
        return isinstance(current, str) and isinstance(target, str) and current.startswith(target)
    if op == "ends_with":
        return isinstance(current, str) and isinstance(target, str) and current.endswith(target)
    if op == "matches":
        if not isinstance(current, str) or not isinstance(target, str):
            return False
        try:
            return re.search(target, current) is not None
        except re.error:
            return False
    if op == "between":
        if not isinstance(target, (list, tuple)) or len(target) != 2:
            return False
        return _compare(current, target[0], "gte") and _compare(current, target[1], "lte")
    if op in {"date_before", "date_after"}:
        left = as_datetime(current)
        right = as_datetime(target)
        if left is None or right is None:
            return False
        return left < right if op == "date_before" else left > right

    return _compare(current, target, op)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, tuple, set, dict)) and len(value) == 0)


def _contains(current: Any, target: Any) -> bool:
    if isinstance(current, str) and isinstance(target, str):
        return target in current
    if isinstance(current, (list, tuple, set)):
        return any(_equals(item, target) for item in current)
    return False


def _compare(current: Any, target: Any, op: str) -> bool:
    left = _comparable(current)
    right = _comparable(target)
    if left is None or right is None:
        return False
    try:
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        if op == "lte":
            return left <= right
    except TypeError:
        return False
    return False


def _equals(left: Any, right: Any) -> bool:
    # strings compare as written; only numeric types and dates are unified
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    return _canonical(left) == _canonical(right)


def _canonical(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _comparable(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, int):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
        as_date = _parse_date(value)
        if as_date is not None:
            return as_date.isoformat()
    return value


def _parse_date(value: str) -> date | None:
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
