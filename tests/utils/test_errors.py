"""Tests for error classes and their serialized form."""

from arena.utils.errors import (
    ArenaError,
    ConcurrencyConflictError,
    DomainRuleViolation,
    ErrorCode,
    HoldNotActiveError,
    InsufficientBalanceError,
    IntegrityBugError,
    PlayerBannedError,
    TournamentFullError,
)


class TestArenaError:
    """Serialization and families."""

    def test_to_dict(self):
        error = InsufficientBalanceError(required=15000, available=9000)

        assert error.to_dict() == {
            "errorCode": "INSUFFICIENT_BALANCE",
            "errorMessage": (
                "Insufficient available balance. Entry fee: 15,000, "
                "your available balance: 9,000"
            ),
            "details": {"required": 15000, "available": 9000},
            "recoverable": True,
        }

    def test_string_code_accepted(self):
        error = ArenaError("CUSTOM", "Something happened")
        assert error.code == "CUSTOM"
        assert str(error) == "Something happened"

    def test_families(self):
        assert isinstance(HoldNotActiveError("h-1", "released"), DomainRuleViolation)
        assert not isinstance(ConcurrencyConflictError(), DomainRuleViolation)
        assert not isinstance(IntegrityBugError("broken"), DomainRuleViolation)
        assert IntegrityBugError("broken").code == ErrorCode.INTEGRITY_VIOLATION.value


class TestMessages:
    """User-facing wording."""

    def test_tournament_full(self):
        assert TournamentFullError("t-1", 16).message == "Tournament and waitlist are both full"
        assert TournamentFullError("t-1", 16, waitlist_full=False).message == "Tournament is full"

    def test_player_banned_temporary(self):
        error = PlayerBannedError(
            username="cheater",
            game_id="cheater#KR1",
            reason=None,
            is_permanent=False,
            expires_at="2026-04-01",
        )

        assert error.message == (
            'Player "cheater" cannot participate - temporarily banned until '
            "2026-04-01: Violation of platform rules"
        )
        assert error.recoverable is False

    def test_hold_not_active(self):
        assert HoldNotActiveError("h-1", "confirmed").message == "Hold is already confirmed"
