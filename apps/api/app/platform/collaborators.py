from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(slots=True, frozen=True)
class CompiledRecordModel:
    """The slice of a compiled record model the engine consults."""

    entity_class: str
    feature_flags: dict[str, bool] = field(default_factory=dict)
    fields: tuple[str, ...] = ()

    @property
    def lifecycle_enabled(self) -> bool:
        return self.feature_flags.get("lifecycle", True)

    @property
    def approval_enabled(self) -> bool:
        return self.feature_flags.get("approval", True)


class RecordModelProvider(Protocol):
    def get_model(self, tenant_id: str, entity_name: str) -> CompiledRecordModel | None:
        ...


class RecordStore(Protocol):
    def get_by_id(self, tenant_id: str, entity_name: str, entity_id: str) -> dict[str, Any] | None:
        ...

    def update(self, tenant_id: str, entity_name: str, entity_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        ...
