"""
Per-game live state: who is connected, the cached vote tally and the mirrored
reveal/timer flags.

Everything here is a cache over the store. A GameSession is created lazily on
first join (or first tally refresh) and thrown away when its room empties.
"""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Tuple

from . import game
from .logging_utils import get_logger

logger = get_logger("twotruths.sessions")


@dataclass
class Participant:
    connection_id: str
    user_session: str
    is_admin: bool
    joined_at: datetime = field(default_factory=game.utcnow)

    def describe(self) -> dict:
        return {
            "connectionId": self.connection_id,
            "userSession": self.user_session,
            "isAdmin": self.is_admin,
            "joinedAt": game.isoformat(self.joined_at),
        }


@dataclass
class GameSession:
    game_id: str
    participants: Dict[str, Participant] = field(default_factory=dict)
    tally: List[int] = field(default_factory=game.empty_tally)
    tally_fresh: bool = False
    lie_revealed: bool = False
    lie_index: Optional[int] = None
    timer_duration: Optional[int] = None
    timer_start_time: Optional[datetime] = None

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    @property
    def total_votes(self) -> int:
        return sum(self.tally)

    def mirror(self, g) -> None:
        """Copy reveal/timer fields from a stored Game row."""
        self.lie_revealed = bool(g.lie_revealed)
        self.lie_index = g.lie_index if g.lie_revealed else None
        self.timer_duration = g.timer_duration
        self.timer_start_time = game.as_utc(g.timer_start_time)

    def apply_tally(self, tally: List[int]) -> None:
        if len(tally) != game.STATEMENT_COUNT:
            raise ValueError("tally must have exactly three slots")
        self.tally = [int(c) for c in tally]
        self.tally_fresh = True

    def mark_revealed(self, lie_index: int) -> None:
        self.lie_revealed = True
        self.lie_index = lie_index

    def timer_remaining(self) -> Optional[float]:
        return game.timer_remaining(self.timer_start_time, self.timer_duration)


@dataclass
class _GameLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SessionRegistry:
    """Process-wide map of game id -> GameSession plus connection -> room index.

    Owned by the service object; nothing else mutates it.
    """

    def __init__(self):
        self.sessions: Dict[str, GameSession] = {}
        self._rooms: Dict[str, str] = {}  # connection_id -> game_id
        self._locks: Dict[str, _GameLock] = {}

    def get(self, game_id: str) -> Optional[GameSession]:
        return self.sessions.get(game_id)

    def ensure(self, g) -> GameSession:
        gs = self.sessions.get(g.id)
        if gs is None:
            gs = GameSession(game_id=g.id)
            self.sessions[g.id] = gs
            logger.debug("session_created", extra={"game_id": g.id})
        gs.mirror(g)
        return gs

    @asynccontextmanager
    async def locked(self, game_id: str) -> AsyncIterator[None]:
        """Serializes commit+broadcast for one game so rooms see mutations in commit order.

        The lock lives only while someone holds or waits for it, or while the
        game has a live session.
        """
        entry = self._locks.get(game_id)
        if entry is None:
            entry = _GameLock()
            self._locks[game_id] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and game_id not in self.sessions:
                self._locks.pop(game_id, None)

    def room_of(self, connection_id: str) -> Optional[str]:
        return self._rooms.get(connection_id)

    def members(self, game_id: str) -> List[Participant]:
        gs = self.sessions.get(game_id)
        return list(gs.participants.values()) if gs else []

    def join(self, g, connection_id: str, user_session: str, is_admin: bool) -> Tuple[GameSession, Participant]:
        gs = self.ensure(g)
        participant = Participant(connection_id=connection_id, user_session=user_session, is_admin=is_admin)
        gs.participants[connection_id] = participant
        self._rooms[connection_id] = g.id
        return gs, participant

    def leave(self, connection_id: str) -> Optional[Tuple[str, Participant, int]]:
        """Remove a connection from its room.

        Returns (game_id, participant, remaining) or None when the connection
        was not in any room. An emptied room's session is discarded.
        """
        game_id = self._rooms.pop(connection_id, None)
        if game_id is None:
            return None
        gs = self.sessions.get(game_id)
        if gs is None:
            return None
        participant = gs.participants.pop(connection_id, None)
        if participant is None:
            return None
        remaining = gs.participant_count
        if remaining == 0:
            self.discard(game_id)
        return game_id, participant, remaining

    def discard(self, game_id: str) -> None:
        gs = self.sessions.pop(game_id, None)
        if gs is not None:
            for cid in list(gs.participants):
                self._rooms.pop(cid, None)
            logger.debug("session_discarded", extra={"game_id": game_id})
        entry = self._locks.get(game_id)
        if entry is not None and entry.users == 0:
            self._locks.pop(game_id, None)

    def clear(self) -> None:
        self.sessions.clear()
        self._rooms.clear()
        self._locks.clear()
