"""Create tournament registration, check-in and hold ledger tables.

Revision ID: registration_core_001
Revises:
Create Date: 2026-10-18

This migration adds:
- users / teams / team_members / banned_game_ids projections
- tournaments: occupancy counters with capacity check
- tournament_checkin_settings: window override + finalized marker
- tournament_registrations: slot XOR waitlist, partial unique indexes
- wallet_transactions: signed amounts with integrity hash
- balance_holds: reserved funds mirrored in users.hold_balance
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "registration_core_001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


NOT_CANCELLED = sa.text("status != 'cancelled'")
ACTIVE_SLOT = sa.text("status != 'cancelled' AND NOT is_waitlisted")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    """Create registration core tables."""
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("username", sa.String(50), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("in_game_ids", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column(
            "wallet_balance",
            sa.BigInteger(),
            nullable=False,
            server_default="0",
            comment="Wallet balance in minor currency units",
        ),
        sa.Column(
            "hold_balance",
            sa.BigInteger(),
            nullable=False,
            server_default="0",
            comment="Sum of active balance holds (not available for use)",
        ),
        *_timestamps(),
        sa.CheckConstraint("hold_balance >= 0", name="ck_users_hold_balance_non_negative"),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)

    op.create_table(
        "teams",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("team_name", sa.String(100), nullable=False),
        sa.Column("game_type", sa.String(30), nullable=False),
        sa.Column(
            "captain_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        *_timestamps(),
    )

    op.create_table(
        "team_members",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "team_id",
            sa.String(36),
            sa.ForeignKey("teams.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("left_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("team_id", "user_id", name="uq_team_member"),
    )
    op.create_index("ix_team_members_team_id", "team_members", ["team_id"])
    op.create_index("ix_team_members_user_id", "team_members", ["user_id"])

    op.create_table(
        "banned_game_ids",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("game_id", sa.String(100), nullable=False),
        sa.Column("game_type", sa.String(30), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("is_permanent", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("ban_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        *_timestamps(),
    )
    op.create_index("ix_banned_game_ids_lookup", "banned_game_ids", ["game_type", "game_id"])

    op.create_table(
        "tournaments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tournament_name", sa.String(200), nullable=False),
        sa.Column(
            "host_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("game_type", sa.String(30), nullable=False),
        sa.Column("tournament_type", sa.String(10), nullable=False, server_default="solo"),
        sa.Column(
            "entry_fee",
            sa.BigInteger(),
            nullable=False,
            server_default="0",
            comment="Entry fee in minor currency units",
        ),
        sa.Column("status", sa.String(30), nullable=False, server_default="upcoming"),
        sa.Column("tournament_start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_teams", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_teams", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "current_teams >= 0", name="ck_tournaments_current_teams_non_negative"
        ),
        sa.CheckConstraint("current_teams <= max_teams", name="ck_tournaments_capacity"),
        sa.CheckConstraint("entry_fee >= 0", name="ck_tournaments_entry_fee_non_negative"),
    )
    op.create_index("ix_tournaments_status", "tournaments", ["status"])
    op.create_index(
        "ix_tournaments_tournament_start_date", "tournaments", ["tournament_start_date"]
    )

    op.create_table(
        "tournament_checkin_settings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "tournament_id",
            sa.String(36),
            sa.ForeignKey("tournaments.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "checkin_window_minutes",
            sa.Integer(),
            nullable=False,
            server_default="30",
            comment="Minutes before tournament start when check-in opens",
        ),
        sa.Column(
            "auto_finalize",
            sa.Boolean(),
            nullable=False,
            server_default="true",
            comment="Finalize check-ins automatically at tournament start",
        ),
        sa.Column(
            "finalized_at",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="When check-in was finalized (slots reassigned)",
        ),
        *_timestamps(),
        sa.CheckConstraint("checkin_window_minutes > 0", name="ck_checkin_window_positive"),
    )

    op.create_table(
        "tournament_registrations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "tournament_id",
            sa.String(36),
            sa.ForeignKey("tournaments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "team_id",
            sa.String(36),
            sa.ForeignKey("teams.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("registration_type", sa.String(10), nullable=False, server_default="solo"),
        sa.Column("team_name", sa.String(100), nullable=True),
        sa.Column("selected_players", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("backup_players", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("status", sa.String(20), nullable=False, server_default="registered"),
        sa.Column("slot_number", sa.Integer(), nullable=True),
        sa.Column("is_waitlisted", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("waitlist_position", sa.Integer(), nullable=True),
        sa.Column("checked_in", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("checked_in_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "check_in_reminder_sent", sa.Boolean(), nullable=False, server_default="false"
        ),
        sa.Column(
            "promoted_via_checkin", sa.Boolean(), nullable=False, server_default="false"
        ),
        sa.Column(
            "original_slot_holder_id",
            sa.String(36),
            nullable=True,
            comment="Registration whose vacated slot this entrant received",
        ),
        sa.Column("promoted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "registered_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "(is_waitlisted AND slot_number IS NULL AND waitlist_position IS NOT NULL) "
            "OR (NOT is_waitlisted AND slot_number IS NOT NULL AND waitlist_position IS NULL)",
            name="ck_registrations_slot_xor_waitlist",
        ),
    )
    op.create_index(
        "ix_tournament_registrations_tournament_id",
        "tournament_registrations",
        ["tournament_id"],
    )
    op.create_index(
        "ix_tournament_registrations_user_id",
        "tournament_registrations",
        ["user_id"],
    )
    op.create_index(
        "ix_registrations_tournament_waitlist",
        "tournament_registrations",
        ["tournament_id", "is_waitlisted"],
    )
    op.create_index(
        "uq_registrations_tournament_user_active",
        "tournament_registrations",
        ["tournament_id", "user_id"],
        unique=True,
        postgresql_where=NOT_CANCELLED,
    )
    op.create_index(
        "uq_registrations_tournament_team_active",
        "tournament_registrations",
        ["tournament_id", "team_id"],
        unique=True,
        postgresql_where=NOT_CANCELLED,
    )
    op.create_index(
        "uq_registrations_tournament_slot_active",
        "tournament_registrations",
        ["tournament_id", "slot_number"],
        unique=True,
        postgresql_where=ACTIVE_SLOT,
    )

    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("tx_type", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="completed"),
        sa.Column(
            "amount",
            sa.BigInteger(),
            nullable=False,
            comment="Transaction amount (+credit/-debit)",
        ),
        sa.Column("balance_before", sa.BigInteger(), nullable=False),
        sa.Column("balance_after", sa.BigInteger(), nullable=False),
        sa.Column("reference_type", sa.String(50), nullable=True),
        sa.Column("reference_id", sa.String(36), nullable=True),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column(
            "integrity_hash",
            sa.String(64),
            nullable=False,
            comment="SHA-256 hash for tamper detection",
        ),
        *_timestamps(),
    )
    op.create_index("ix_wallet_transactions_user_id", "wallet_transactions", ["user_id"])
    op.create_index("ix_wallet_transactions_tx_type", "wallet_transactions", ["tx_type"])

    op.create_table(
        "balance_holds",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "amount",
            sa.BigInteger(),
            nullable=False,
            comment="Held amount in minor currency units",
        ),
        sa.Column("hold_type", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("reference_type", sa.String(50), nullable=True),
        sa.Column("reference_id", sa.String(36), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "transaction_id",
            sa.String(36),
            sa.ForeignKey("wallet_transactions.id", ondelete="SET NULL"),
            nullable=True,
            comment="Wallet debit created when the hold was confirmed",
        ),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_balance_holds_amount_positive"),
    )
    op.create_index("ix_balance_holds_user_id", "balance_holds", ["user_id"])
    op.create_index("ix_balance_holds_status", "balance_holds", ["status"])
    op.create_index(
        "ix_balance_holds_reference", "balance_holds", ["reference_type", "reference_id"]
    )
    op.create_index(
        "ix_balance_holds_status_expires", "balance_holds", ["status", "expires_at"]
    )


def downgrade() -> None:
    """Drop registration core tables."""
    op.drop_table("balance_holds")
    op.drop_table("wallet_transactions")
    op.drop_table("tournament_registrations")
    op.drop_table("tournament_checkin_settings")
    op.drop_table("tournaments")
    op.drop_table("banned_game_ids")
    op.drop_table("team_members")
    op.drop_table("teams")
    op.drop_table("users")
