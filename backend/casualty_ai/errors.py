"""
Exceptions raised by the evidence analysis and casualty report pipeline.

Per-evidence upstream failures are captured as data by the batch layer;
everything else here propagates to the caller.
"""
from typing import Optional


class CasualtyPipelineError(Exception):
    """Base class for pipeline errors."""


class InvalidIdentifierError(CasualtyPipelineError, ValueError):
    """An identifier is not a 24-character hexadecimal object id."""

    def __init__(self, identifier: object, field: str = "id"):
        self.identifier = identifier
        self.field = field
        super().__init__(f"Invalid {field} format: {identifier!r}")


class NotFoundError(CasualtyPipelineError):
    """A referenced report, incident, analysis or casualty report does not exist."""

    def __init__(self, entity: str, identifier: str, message: Optional[str] = None):
        self.entity = entity
        self.identifier = identifier
        super().__init__(message or f"{entity.capitalize()} not found: {identifier}")


class NoEvidenceError(NotFoundError):
    """The incident behind a report has no evidence to analyze."""

    def __init__(self, incident_id: str):
        super().__init__(
            "evidence",
            incident_id,
            f"No evidence found for incident: {incident_id}",
        )


class UpstreamUnavailableError(CasualtyPipelineError):
    """Media fetch or model call failed, timed out or ran out of retries."""


class InvalidAnalysisStateError(CasualtyPipelineError, ValueError):
    """An operation was requested for an analysis in the wrong lifecycle state."""


class ConversationAccessError(CasualtyPipelineError):
    """A user tried to read or write a conversation they do not own."""

    def __init__(self, conversation_id: str, user_id: str):
        self.conversation_id = conversation_id
        self.user_id = user_id
        super().__init__(f"User {user_id} is not authorized to access conversation {conversation_id}")


class InvalidConversationStateError(CasualtyPipelineError, ValueError):
    """A message was sent to a conversation that is no longer active."""
