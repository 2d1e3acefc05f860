"""
Error taxonomy for the adventure engine.

Every error a caller can see derives from AdventureError and carries the HTTP
status it maps to. GenerationFailure and UpstreamUnavailable are internal:
the engine catches them and degrades instead of surfacing them.
"""

from typing import Any


class AdventureError(Exception):
    """Base class for structured, client-safe errors."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)


class Unauthenticated(AdventureError):
    status_code = 401
    default_message = "User not authenticated"


class InvalidArgument(AdventureError):
    status_code = 400
    default_message = "Invalid request"


class NotFound(AdventureError):
    status_code = 404
    default_message = "Not found"

    def __init__(self, entity: str, identifier: Any, message: str | None = None) -> None:
        self.entity = entity
        self.identifier = identifier
        super().__init__(
            message or f"{entity} '{identifier}' not found",
            details={"entity": entity, "id": identifier},
        )


class NotAccessible(AdventureError):
    status_code = 403
    default_message = "Not accessible"


class ObjectiveUnmet(AdventureError):
    """Objectives were checked and are not satisfied yet. A normal negative result."""

    status_code = 400
    default_message = "Level objectives not completed"

    def __init__(self, evaluation: Any, message: str | None = None) -> None:
        self.evaluation = evaluation
        super().__init__(message)


class PersistenceFailure(AdventureError):
    status_code = 500
    default_message = "Progress storage unavailable"


class GenerationFailure(AdventureError):
    """Path generation failed; always answered with the fallback layout."""


class UpstreamUnavailable(AdventureError):
    """Task Source or XP Service unreachable or timed out."""

    status_code = 500
    default_message = "Upstream service unavailable"
