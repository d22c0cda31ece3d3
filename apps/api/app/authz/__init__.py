from app.authz.models import Group, GroupMember, ReportingLine, Role, UserRole

__all__ = [
    "Role",
    "UserRole",
    "Group",
    "GroupMember",
    "ReportingLine",
]
