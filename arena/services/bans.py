"""Ban list lookups for team registration."""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from arena.models.ban import BannedGameId
from arena.models.user import User
from arena.utils.clock import ensure_utc, utcnow
from arena.utils.errors import PlayerBannedError


@dataclass(frozen=True)
class BanStatus:
    game_id: str
    reason: str | None
    is_permanent: bool
    expires_at: datetime | None


class BanChecker:
    """Read-only view of the moderation ban list."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_bans(
        self,
        game_type: str,
        game_ids: list[str],
        now: datetime | None = None,
    ) -> dict[str, BanStatus]:
        """Active bans among ``game_ids``, keyed by game id.

        A ban is in force when active and either permanent or not yet expired.
        """
        if not game_ids:
            return {}
        now = now or utcnow()

        result = await self.session.execute(
            select(BannedGameId).where(
                BannedGameId.game_type == game_type,
                BannedGameId.game_id.in_(game_ids),
                BannedGameId.is_active.is_(True),
                or_(
                    BannedGameId.is_permanent.is_(True),
                    and_(
                        BannedGameId.ban_expires_at.is_not(None),
                        BannedGameId.ban_expires_at > now,
                    ),
                ),
            )
        )
        return {
            ban.game_id: BanStatus(
                game_id=ban.game_id,
                reason=ban.reason,
                is_permanent=ban.is_permanent,
                expires_at=ensure_utc(ban.ban_expires_at),
            )
            for ban in result.scalars().all()
        }

    async def ensure_players_not_banned(
        self,
        game_type: str,
        players: list[User],
        now: datetime | None = None,
    ) -> None:
        """Raise PlayerBannedError naming the first banned player."""
        game_ids = {p.id: p.game_id_for(game_type) for p in players}
        bans = await self.find_bans(
            game_type, [gid for gid in game_ids.values() if gid], now=now
        )
        if not bans:
            return

        for player in players:
            ban = bans.get(game_ids[player.id])
            if ban is None:
                continue
            raise PlayerBannedError(
                username=player.username,
                game_id=ban.game_id,
                reason=ban.reason,
                is_permanent=ban.is_permanent,
                expires_at=ban.expires_at.date().isoformat() if ban.expires_at else None,
            )
