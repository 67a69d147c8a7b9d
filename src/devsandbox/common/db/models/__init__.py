from devsandbox.common.db.models.base import Base
from devsandbox.common.db.models.projects import (
    Project,
    ProjectImage,
    ImageStatus,
    ProjectPayload,
    ProjectImagePayload,
)
from devsandbox.common.db.models.sessions import (
    Session,
    SessionStatus,
    SessionPayload,
    ACTIVE_STATUSES,
)

__all__ = [
    "Base",
    "Project",
    "ProjectImage",
    "ImageStatus",
    "ProjectPayload",
    "ProjectImagePayload",
    "Session",
    "SessionStatus",
    "SessionPayload",
    "ACTIVE_STATUSES",
]
