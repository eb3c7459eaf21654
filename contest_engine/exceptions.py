"""
contest_engine/exceptions.py
Domain exceptions for the contest & leaderboard engine.

Every error carries:
- message: human-readable description
- code: machine-readable code (see contest_engine.errors.ErrorCode)
- status_code: HTTP status used by the API layer

Idempotency-class conditions (already joined, already completed on submit,
deduplicated ledger append) are NOT exceptions; they resolve to the stored
state and are returned as successful results.
"""
from typing import Any, Dict, Optional


class ContestEngineError(Exception):
    """Base exception for the contest engine"""
    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class ContestNotFoundError(ContestEngineError):
    """Contest id does not resolve."""
    status_code = 404

    def __init__(self, contest_id: Any):
        self.contest_id = contest_id
        super().__init__(
            f"Contest {contest_id} not found",
            "CONTEST_NOT_FOUND",
            details={"contest_id": contest_id}
        )


class ParticipationNotFoundError(ContestEngineError):
    """Participation id does not resolve."""
    status_code = 404

    def __init__(self, participation_id: Any):
        self.participation_id = participation_id
        super().__init__(
            f"Participation {participation_id} not found",
            "PARTICIPATION_NOT_FOUND",
            details={"participation_id": participation_id}
        )


class InvalidContestError(ContestEngineError):
    """
    Contest definition violates an invariant.

    Examples:
    - start_time >= end_time
    - duration_minutes <= 0
    - max_participants <= 0
    - definition edited after participants joined
    """
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "INVALID_CONTEST", details=details)


class InvalidSubmissionError(ContestEngineError):
    """Submitted score payload is malformed (negative score, counts out of range)."""
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "INVALID_SUBMISSION", details=details)


class ContestFullError(ContestEngineError):
    """Join rejected because the contest reached max_participants."""
    status_code = 409

    def __init__(self, contest_id: int, max_participants: int):
        self.contest_id = contest_id
        self.max_participants = max_participants
        super().__init__(
            f"Contest {contest_id} is full ({max_participants} participants)",
            "CONTEST_FULL",
            details={"contest_id": contest_id, "max_participants": max_participants}
        )


class ContestEndedError(ContestEngineError):
    """Join attempted after the contest ended or was cancelled."""
    status_code = 409

    def __init__(self, contest_id: int, reason: str = "ended"):
        self.contest_id = contest_id
        self.reason = reason
        super().__init__(
            f"Contest {contest_id} has been cancelled" if reason == "cancelled" else f"Contest {contest_id} has ended",
            "CONTEST_ENDED",
            details={"contest_id": contest_id, "reason": reason}
        )


class AlreadyCompletedError(ContestEngineError):
    """Attempt to start a participation that already has a final score."""
    status_code = 409

    def __init__(self, participation_id: int):
        self.participation_id = participation_id
        super().__init__(
            f"Participation {participation_id} is already completed",
            "ALREADY_COMPLETED",
            details={"participation_id": participation_id}
        )


class SnapshotExpiredError(ContestEngineError):
    """Requested leaderboard version is no longer retained."""
    status_code = 410

    def __init__(self, window: str, version: int, oldest_retained: int):
        self.window = window
        self.version = version
        self.oldest_retained = oldest_retained
        super().__init__(
            f"Leaderboard version {version} for window '{window}' has expired",
            "SNAPSHOT_EXPIRED",
            details={"window": window, "version": version, "oldest_retained": oldest_retained}
        )


class UnknownWindowError(ContestEngineError):
    """Window kind is not one of global, weekly, monthly."""
    status_code = 400

    def __init__(self, window: Any):
        super().__init__(
            f"Unknown leaderboard window '{window}'",
            "UNKNOWN_WINDOW",
            details={"window": window}
        )


class SnapshotNotFoundError(ContestEngineError):
    """Requested leaderboard version has not been published yet."""
    status_code = 404

    def __init__(self, window: str, version: int, current_version: int):
        super().__init__(
            f"Leaderboard version {version} for window '{window}' does not exist",
            "SNAPSHOT_NOT_FOUND",
            details={"window": window, "version": version, "current_version": current_version}
        )


class AdminRequiredError(ContestEngineError):
    """Admin endpoint called without a valid X-Admin-Token (or with admin endpoints disabled)."""
    status_code = 403

    def __init__(self):
        super().__init__("Admin token required", "ADMIN_REQUIRED")
