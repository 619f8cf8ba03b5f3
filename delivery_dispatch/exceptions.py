"""Dispatch domain exceptions.

Raised synchronously by the engine when a lifecycle rule is violated.
The API layer catches ``DispatchError`` and renders ``to_dict()`` with
``status_code``; nothing here is retried internally.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class DispatchError(Exception):
    kind: str = "DispatchError"
    status_code: int = 400

    def __init__(
        self,
        message: str,
        *,
        entity: Optional[str] = None,
        entity_id: Optional[str] = None,
        transition: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.entity = entity
        self.entity_id = entity_id
        self.transition = transition

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "detail": self.message,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "transition": self.transition,
        }


class NotFound(DispatchError):
    """The referenced order, route or courier does not exist."""

    kind = "NotFound"
    status_code = 404


class InvalidState(DispatchError):
    """The operation is not legal in the entity's current lifecycle state."""

    kind = "InvalidState"
    status_code = 409


class CourierUnavailable(DispatchError):
    """The target courier is not AVAILABLE for a new route."""

    kind = "CourierUnavailable"
    status_code = 409


class ActiveRouteExists(DispatchError):
    """The courier is still linked to a route that is not DONE."""

    kind = "ActiveRouteExists"
    status_code = 409


class Forbidden(DispatchError):
    """The acting courier is not the one the entity belongs to."""

    kind = "Forbidden"
    status_code = 403


class NoCourierAvailable(DispatchError):
    kind = "NoCourierAvailable"
    status_code = 409


class BatchTooLarge(DispatchError):
    kind = "BatchTooLarge"
    status_code = 400


class EmptySelection(DispatchError):
    kind = "EmptySelection"
    status_code = 400


class EmptyRoute(DispatchError):
    kind = "EmptyRoute"
    status_code = 400


class InvalidInput(DispatchError):
    kind = "InvalidInput"
    status_code = 400


class PersistenceFailed(DispatchError):
    """Saving the snapshot failed. In-memory state has already been updated."""

    kind = "PersistenceFailed"
    status_code = 500
