from app.platform.approval.models import (
    ApprovalAssignmentSnapshot,
    ApprovalEscalation,
    ApprovalEvent,
    ApprovalInstance,
    ApprovalStage,
    ApprovalStatus,
    ApprovalTask,
    ApprovalTemplate,
    ApprovalTemplateRule,
    ApprovalTemplateStage,
    StageStatus,
    TaskStatus,
)

__all__ = [
    "ApprovalTemplate",
    "ApprovalTemplateStage",
    "ApprovalTemplateRule",
    "ApprovalInstance",
    "ApprovalStage",
    "ApprovalTask",
    "ApprovalAssignmentSnapshot",
    "ApprovalEscalation",
    "ApprovalEvent",
    "ApprovalStatus",
    "StageStatus",
    "TaskStatus",
]
