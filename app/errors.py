"""Recoverable board failures and the result type operations return.

Assign fails with StationNotFound, UnknownModalityOrType, ClientAlreadyActive
or NoEligibleStep, plus StationBusy: a station running one client is never
handed to a different named client (the request is rejected rather than
retimed), and a claim that loses a race to another writer fails the same way.
ClientNotFound, PlanNotFound and InvalidRequest come from intake and request
validation, including a custom duration that is not a positive integer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


class BoardError(Exception):
    """Recoverable failure of a board operation. State is left unchanged."""

    reason = "BoardError"
    default_message = "Operation failed"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class StationNotFound(BoardError):
    reason = "StationNotFound"
    default_message = "Station not found"


class UnknownModalityOrType(BoardError):
    reason = "UnknownModalityOrType"
    default_message = "Unknown category/type and no custom duration"


class ClientAlreadyActive(BoardError):
    reason = "ClientAlreadyActive"
    default_message = "Client already in another session"


class NoEligibleStep(BoardError):
    reason = "NoEligibleStep"
    default_message = "No pending or active step"


class StationBusy(BoardError):
    """Station is running a different client, or another writer claimed it first."""

    reason = "StationBusy"
    default_message = "Station is occupied by another client"


class ClientNotFound(BoardError):
    reason = "ClientNotFound"
    default_message = "Client not found"


class PlanNotFound(BoardError):
    reason = "PlanNotFound"
    default_message = "No plan for this client today"


class InvalidRequest(BoardError):
    reason = "InvalidRequest"
    default_message = "Invalid request"


NOT_FOUND_REASONS = {StationNotFound.reason, ClientNotFound.reason, PlanNotFound.reason}
CONFLICT_REASONS = {ClientAlreadyActive.reason, NoEligibleStep.reason, StationBusy.reason}


@dataclass(frozen=True)
class MutationResult:
    ok: bool
    reason: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def success(cls) -> "MutationResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: BoardError) -> "MutationResult":
        return cls(ok=False, reason=error.reason, message=error.message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": self.ok}
        if not self.ok:
            payload["reason"] = self.reason
            payload["message"] = self.message
        return payload


def http_status_for(result: MutationResult) -> int:
    if result.ok:
        return 200
    if result.reason in NOT_FOUND_REASONS:
        return 404
    if result.reason in CONFLICT_REASONS:
        return 409
    return 400
