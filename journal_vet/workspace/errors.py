"""Error taxonomy shared by the workspace services and the HTTP layer."""

from __future__ import annotations

import uuid

__all__ = [
    "JournalVetError",
    "PermissionDenied",
    "NotFound",
    "InviteInvalid",
    "ProtectedOwnerMembership",
    "PipelineDispatchFailed",
]


class JournalVetError(Exception):
    """Base class for domain errors raised by the services."""


class PermissionDenied(JournalVetError, PermissionError):
    """The actor can see the entity but may not perform the operation."""


class NotFound(JournalVetError, LookupError):
    """The entity does not exist or is outside the actor's visible scope."""


class InviteInvalid(JournalVetError):
    """Unknown, expired or already resolved invite."""

    def __init__(self, message: str = "Invite is invalid or expired"):
        super().__init__(message)


class ProtectedOwnerMembership(JournalVetError):
    """Attempt to remove the workspace owner's own membership."""

    def __init__(self, message: str = "Cannot remove the workspace owner"):
        super().__init__(message)


class PipelineDispatchFailed(JournalVetError):
    """The pipeline gateway did not acknowledge a processing request.

    The journal row is kept in ``processing`` and can be retried with
    resummarize.
    """

    def __init__(self, journal_id: uuid.UUID, detail: str | None = None):
        self.journal_id = journal_id
        self.detail = detail
        message = "Failed to trigger journal processing"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
