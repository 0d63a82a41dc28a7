"""Custom exception classes for registration, ledger and check-in errors.

Provides structured error handling with error codes and user-friendly messages.

Families:
- RequestValidationError: malformed input, rejected before any transaction
- DomainRuleViolation: a business rule refused the operation (rolled back)
- ConcurrencyConflictError: lock wait/timeout, retry the whole operation
- IntegrityBugError: an invariant was found broken, never repaired silently
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standard error codes."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    INTEGRITY_VIOLATION = "INTEGRITY_VIOLATION"
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"

    # Lookup errors
    TOURNAMENT_NOT_FOUND = "TOURNAMENT_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    REGISTRATION_NOT_FOUND = "REGISTRATION_NOT_FOUND"
    HOLD_NOT_FOUND = "HOLD_NOT_FOUND"

    # Registration errors
    TOURNAMENT_NOT_OPEN = "TOURNAMENT_NOT_OPEN"
    ALREADY_REGISTERED = "ALREADY_REGISTERED"
    ALREADY_WAITLISTED = "ALREADY_WAITLISTED"
    TOURNAMENT_FULL = "TOURNAMENT_FULL"
    MISSING_GAME_IDENTITY = "MISSING_GAME_IDENTITY"
    PLAYER_BANNED = "PLAYER_BANNED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    TEAM_REQUIRED = "TEAM_REQUIRED"
    NOT_TEAM_MEMBER = "NOT_TEAM_MEMBER"

    # Ledger errors
    HOLD_NOT_ACTIVE = "HOLD_NOT_ACTIVE"

    # Check-in errors
    CHECKIN_STILL_OPEN = "CHECKIN_STILL_OPEN"


class ArenaError(Exception):
    """Base exception for core errors.

    Attributes:
        code: Error code for programmatic handling
        message: User-friendly error message
        details: Additional error details
        recoverable: Whether retrying (or changing input) can succeed
    """

    def __init__(
        self,
        code: ErrorCode | str,
        message: str,
        details: dict[str, Any] | None = None,
        recoverable: bool = True,
    ):
        self.code = code.value if isinstance(code, ErrorCode) else code
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "errorCode": self.code,
            "errorMessage": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# Validation
# =============================================================================


class RequestValidationError(ArenaError):
    """Raised for malformed input, before any transaction is opened."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            code=ErrorCode.INVALID_REQUEST,
            message=message,
            details=details,
            recoverable=True,
        )


# =============================================================================
# Domain rule violations
# =============================================================================


class DomainRuleViolation(ArenaError):
    """A business rule refused the operation. No partial state is left."""


class TournamentNotFoundError(DomainRuleViolation):
    def __init__(self, tournament_id: str):
        super().__init__(
            code=ErrorCode.TOURNAMENT_NOT_FOUND,
            message="Tournament not found",
            details={"tournamentId": tournament_id},
            recoverable=False,
        )


class UserNotFoundError(DomainRuleViolation):
    def __init__(self, user_id: str):
        super().__init__(
            code=ErrorCode.USER_NOT_FOUND,
            message="User not found",
            details={"userId": user_id},
            recoverable=False,
        )


class RegistrationNotFoundError(DomainRuleViolation):
    def __init__(self, tournament_id: str, user_id: str):
        super().__init__(
            code=ErrorCode.REGISTRATION_NOT_FOUND,
            message="You are not registered for this tournament",
            details={"tournamentId": tournament_id, "userId": user_id},
            recoverable=False,
        )


class TournamentNotOpenError(DomainRuleViolation):
    """Raised when the tournament no longer (or not yet) accepts entrants."""

    def __init__(self, tournament_id: str, status: str):
        super().__init__(
            code=ErrorCode.TOURNAMENT_NOT_OPEN,
            message="Registration is not open for this tournament",
            details={"tournamentId": tournament_id, "status": status},
            recoverable=False,
        )


class AlreadyRegisteredError(DomainRuleViolation):
    def __init__(self, tournament_id: str, team: bool = False):
        subject = "This team is" if team else "You are"
        super().__init__(
            code=ErrorCode.ALREADY_REGISTERED,
            message=f"{subject} already registered for this tournament",
            details={"tournamentId": tournament_id},
            recoverable=False,
        )


class AlreadyWaitlistedError(DomainRuleViolation):
    def __init__(self, tournament_id: str, team: bool = False):
        subject = "This team is" if team else "You are"
        super().__init__(
            code=ErrorCode.ALREADY_WAITLISTED,
            message=f"{subject} already on the waitlist",
            details={"tournamentId": tournament_id},
            recoverable=False,
        )


class TournamentFullError(DomainRuleViolation):
    """Raised when slots and waitlist are both closed to the entrant."""

    def __init__(self, tournament_id: str, max_teams: int, waitlist_full: bool = True):
        super().__init__(
            code=ErrorCode.TOURNAMENT_FULL,
            message="Tournament and waitlist are both full"
            if waitlist_full
            else "Tournament is full",
            details={"tournamentId": tournament_id, "maxTeams": max_teams},
            recoverable=False,
        )


class MissingGameIdentityError(DomainRuleViolation):
    def __init__(self, game_type: str):
        super().__init__(
            code=ErrorCode.MISSING_GAME_IDENTITY,
            message=f"Please add your {game_type.upper()} game ID in your profile before registering",
            details={"gameType": game_type},
            recoverable=True,
        )


class PlayerBannedError(DomainRuleViolation):
    def __init__(
        self,
        username: str,
        game_id: str,
        reason: str | None,
        is_permanent: bool,
        expires_at: str | None = None,
    ):
        reason = reason or "Violation of platform rules"
        if is_permanent:
            ban_message = f"permanently banned: {reason}"
        else:
            ban_message = f"temporarily banned until {expires_at}: {reason}"
        super().__init__(
            code=ErrorCode.PLAYER_BANNED,
            message=f'Player "{username}" cannot participate - {ban_message}',
            details={
                "username": username,
                "gameId": game_id,
                "isPermanent": is_permanent,
                "banExpiresAt": expires_at,
            },
            recoverable=False,
        )


class InsufficientBalanceError(DomainRuleViolation):
    """Raised when available balance (wallet minus holds) cannot cover a fee."""

    def __init__(self, required: int, available: int):
        super().__init__(
            code=ErrorCode.INSUFFICIENT_BALANCE,
            message=(
                f"Insufficient available balance. Entry fee: {required:,}, "
                f"your available balance: {available:,}"
            ),
            details={"required": required, "available": available},
            recoverable=True,
        )


class TeamRequiredError(DomainRuleViolation):
    def __init__(self, tournament_type: str):
        super().__init__(
            code=ErrorCode.TEAM_REQUIRED,
            message=f"Team ID is required for {tournament_type} tournaments",
            details={"tournamentType": tournament_type},
            recoverable=True,
        )


class NotTeamMemberError(DomainRuleViolation):
    def __init__(self, team_id: str):
        super().__init__(
            code=ErrorCode.NOT_TEAM_MEMBER,
            message="You are not a member of this team",
            details={"teamId": team_id},
            recoverable=False,
        )


class HoldNotFoundError(DomainRuleViolation):
    def __init__(self, hold_id: str):
        super().__init__(
            code=ErrorCode.HOLD_NOT_FOUND,
            message="Hold not found",
            details={"holdId": hold_id},
            recoverable=False,
        )


class HoldNotActiveError(DomainRuleViolation):
    """Raised on release/confirm of a hold that already reached a terminal status.

    Callers treat this as idempotency protection, not as success.
    """

    def __init__(self, hold_id: str, status: str):
        super().__init__(
            code=ErrorCode.HOLD_NOT_ACTIVE,
            message=f"Hold is already {status}",
            details={"holdId": hold_id, "status": status},
            recoverable=False,
        )


class CheckinStillOpenError(DomainRuleViolation):
    def __init__(self, tournament_id: str):
        super().__init__(
            code=ErrorCode.CHECKIN_STILL_OPEN,
            message="Cannot finalize check-ins before the tournament has started",
            details={"tournamentId": tournament_id},
            recoverable=True,
        )


# =============================================================================
# Concurrency and integrity
# =============================================================================


class ConcurrencyConflictError(ArenaError):
    """Lock wait/timeout or a lost race on a unique index.

    Safe to retry the whole operation from the top, never a sub-step.
    """

    def __init__(self, message: str = "Concurrent update conflict, please retry"):
        super().__init__(
            code=ErrorCode.CONCURRENCY_CONFLICT,
            message=message,
            recoverable=True,
        )


class IntegrityBugError(ArenaError):
    """An invariant was found violated. Surfaced as an internal error."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            code=ErrorCode.INTEGRITY_VIOLATION,
            message=message,
            details=details,
            recoverable=False,
        )


class IllegalTransitionError(IntegrityBugError):
    """A registration was asked to move between states it cannot connect."""

    def __init__(self, registration_id: str | None, from_state: str, action: str):
        super().__init__(
            message=f"Cannot {action} a registration in state {from_state}",
            details={
                "registrationId": registration_id,
                "fromState": from_state,
                "action": action,
            },
        )
        self.code = ErrorCode.ILLEGAL_TRANSITION.value
