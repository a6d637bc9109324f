"""
Game lifecycle and real-time sync.

GameService is the one object a transport talks to. It validates a request,
applies it to the store, refreshes the in-memory session and fans the result
out to the game's room. Storage is always committed before anything is
broadcast; a failed send never undoes a commit.

Store access is blocking, so every async path hands it to a worker thread;
the session registry and the connection table are only touched on the event
loop. The plain read methods (get_game_state, vote_summary, ...) only read
them and are safe to call from a threadpool.
"""
import asyncio
import functools
import hmac
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import anyio.to_thread
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import crud, game, models
from .broadcast import (
    ERROR,
    GAME_STATE,
    LIE_REVEALED,
    PARTICIPANT_COUNT_CHANGED,
    PARTICIPANT_JOINED,
    PARTICIPANT_LEFT,
    PONG,
    REVEAL_RESULT,
    TIMER_EXPIRED,
    TIMER_TICK,
    VOTE_TALLY_CHANGED,
    BroadcastEngine,
    make_event,
)
from .config import TIMER_MODE_HALT, Settings
from .errors import Forbidden, GameError, GameNotFound, InvalidInput, StorageError, VotingClosed
from .logging_utils import get_logger
from .schemas import (
    JoinGameCommand,
    PingCommand,
    RequestVoteUpdateCommand,
    ResyncCommand,
    RevealLieCommand,
    TimerUpdateCommand,
    parse_command,
)
from .sessions import Participant, SessionRegistry
from .timers import TimerController

logger = get_logger("twotruths.service")


@dataclass
class TallySnapshot:
    game_id: str
    votes: List[int]
    vote_id: Optional[int] = None
    voted_statement: Optional[int] = None
    voted_at: Optional[datetime] = None

    @property
    def total(self) -> int:
        return sum(self.votes)


@dataclass
class RevealResult:
    game_id: str
    lie_index: int
    already_revealed: bool
    revealed_by: Optional[str] = None


@dataclass
class ParticipantSnapshot:
    participant: Participant
    state: Dict[str, Any] = field(default_factory=dict)


def _same_session(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode(), b.encode())


class GameService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine=None,
        publisher=None,
        authenticator=None,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], datetime] = game.utcnow,
    ):
        self.settings = settings or Settings()
        self.engine = engine
        self.registry = SessionRegistry()
        self.broadcaster = BroadcastEngine(self.registry, publisher=publisher)
        self.publisher = publisher
        self.authenticator = authenticator
        self.timers = TimerController(self.on_timer_expired, sleep=sleep, clock=clock)
        self._clock = clock
        self._sweep_task: Optional[asyncio.Task] = None

    # lifecycle

    def _db(self) -> Session:
        return Session(self.engine or crud.engine)

    async def _run(self, fn: Callable, *args, **kwargs):
        return await anyio.to_thread.run_sync(functools.partial(fn, *args, **kwargs))

    async def start(self, sweep: bool = True) -> None:
        rescheduled = await self.rehydrate_timers()
        if sweep and self.settings.sweep_interval_seconds > 0:
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())
        logger.info("service_started", extra={"count": rescheduled})

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None
        await self.timers.shutdown()
        self.broadcaster.clear()
        self.registry.clear()
        if self.publisher is not None and hasattr(self.publisher, "close"):
            await self.publisher.close()
        logger.info("service_stopped")

    def _running_timers(self) -> List[models.Game]:
        with self._db() as s:
            return crud.list_running_timers(s)

    async def rehydrate_timers(self) -> int:
        """Re-arm countdowns of unrevealed games from their stored start time."""
        running = await self._run(self._running_timers)
        for g in running:
            self.timers.schedule(g.id, g.timer_start_time, g.timer_duration)
        return len(running)

    # broadcast helpers

    async def _broadcast(self, game_id: str, event: Dict[str, Any], exclude=()) -> None:
        dead = await self.broadcaster.emit(game_id, event, exclude=exclude)
        for cid in dead:
            await self.leave(cid)

    async def _reply(self, connection_id: str, event: Dict[str, Any]) -> None:
        if not await self.broadcaster.send_to(connection_id, event):
            await self.leave(connection_id)

    # blocking store access

    def _require_game(self, s: Session, game_id: str) -> models.Game:
        g = crud.get_game(s, game_id)
        if g is None:
            raise GameNotFound()
        return g

    def _load(self, game_id: str) -> Tuple[models.Game, List[int]]:
        with self._db() as s:
            g = self._require_game(s, game_id)
            return g, crud.tally_votes(s, game_id)

    def _tally(self, game_id: str) -> List[int]:
        with self._db() as s:
            return crud.tally_votes(s, game_id)

    def _record_vote(self, game_id, user_session, voted_statement, user_ip, user_agent):
        with self._db() as s:
            g = self._require_game(s, game_id)
            if g.lie_revealed or game.timer_expired(g, self._clock()):
                raise VotingClosed()
            vote = crud.insert_vote_if_absent(s, game_id, user_session, voted_statement, user_ip, user_agent)
            return vote, crud.tally_votes(s, game_id)

    def _flip_reveal(self, game_id: str, requester_session: Optional[str], by_timer: bool) -> Tuple[int, bool]:
        with self._db() as s:
            g = self._require_game(s, game_id)
            if not by_timer and not _same_session(requester_session, g.creator_session):
                raise Forbidden()
            return crud.conditional_reveal_lie(s, game_id)

    def _insert_game(self, **fields) -> models.Game:
        with self._db() as s:
            return crud.create_game(s, **fields)

    def _delete_expired(self, cutoff: datetime) -> List[str]:
        with self._db() as s:
            return crud.delete_games_older_than(s, cutoff)

    # reads

    async def recompute_tally(self, game_id: str) -> List[int]:
        """Rebuild the tally from stored votes and refresh the session cache."""
        tally = await self._run(self._tally, game_id)
        gs = self.registry.get(game_id)
        if gs is not None:
            gs.apply_tally(tally)
        return tally

    def get_game_state(self, game_id: str) -> Dict[str, Any]:
        g, tally = self._load(game_id)
        gs = self.registry.get(game_id)
        return game.game_state(g, tally, gs.participant_count if gs else 0, now=self._clock())

    def vote_summary(self, game_id: str) -> Dict[str, Any]:
        _, tally = self._load(game_id)
        return {"votes": tally, "totalVotes": sum(tally), "breakdown": game.breakdown(tally)}

    def check_vote(self, game_id: str, user_session: str) -> Dict[str, Any]:
        with self._db() as s:
            v = crud.get_vote(s, game_id, user_session)
        if v is None:
            return {"hasVoted": False}
        return {"hasVoted": True, "votedStatement": v.voted_statement}

    def admin_votes(self, game_id: str) -> List[Dict[str, Any]]:
        with self._db() as s:
            self._require_game(s, game_id)
            return [
                {
                    "id": v.id,
                    "user_session": v.user_session,
                    "voted_statement": v.voted_statement,
                    "user_ip": v.user_ip,
                    "voted_at": game.isoformat(v.voted_at),
                }
                for v in crud.list_votes(s, game_id)
            ]

    def stats(self, game_id: str) -> Dict[str, Any]:
        with self._db() as s:
            self._require_game(s, game_id)
            return crud.vote_stats(s, game_id)

    # mutations

    async def create_game(
        self,
        creator_session: str,
        teammate_name: str,
        statements: List[str],
        lie_index: int,
        teammate_picture: Optional[str] = None,
        timer_duration: Optional[int] = None,
        background_music: Optional[str] = None,
    ) -> models.Game:
        if not creator_session:
            raise InvalidInput("creator_session is required")
        if len(statements) != game.STATEMENT_COUNT or not all(st and st.strip() for st in statements):
            raise InvalidInput("Exactly three non-empty statements are required")
        if not game.is_valid_statement_index(lie_index):
            raise InvalidInput("lie_index must be between 0 and 2")
        if timer_duration is not None and timer_duration < 0:
            raise InvalidInput("timer_duration must not be negative")

        g = await self._run(
            self._insert_game,
            creator_session=creator_session,
            teammate_name=teammate_name,
            statements=list(statements),
            lie_index=lie_index,
            teammate_picture=teammate_picture,
            timer_duration=timer_duration,
            background_music=background_music,
        )
        if g.timer_duration:
            self.timers.schedule(g.id, g.timer_start_time, g.timer_duration)
        logger.info("game_created", extra={"game_id": g.id})
        return g

    async def cast_vote(
        self,
        game_id: str,
        user_session: str,
        voted_statement: int,
        user_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TallySnapshot:
        if not game.is_valid_statement_index(voted_statement):
            raise InvalidInput("voted_statement must be between 0 and 2")
        if not user_session:
            raise InvalidInput("user_session is required")

        async with self.registry.locked(game_id):
            vote, tally = await self._run(
                self._record_vote, game_id, user_session, voted_statement, user_ip, user_agent,
            )
            gs = self.registry.get(game_id)
            if gs is not None:
                gs.apply_tally(tally)
            logger.info("vote_cast", extra={"game_id": game_id, "user_session": user_session})
            await self._broadcast(
                game_id,
                make_event(VOTE_TALLY_CHANGED, game_id, votes=tally, totalVotes=sum(tally)),
            )
        return TallySnapshot(
            game_id=game_id,
            votes=tally,
            vote_id=vote.id,
            voted_statement=vote.voted_statement,
            voted_at=vote.voted_at,
        )

    async def reveal_lie(
        self,
        game_id: str,
        requester_session: Optional[str] = None,
        by_timer: bool = False,
    ) -> RevealResult:
        """Hidden -> Revealed, once.

        A second reveal (admin after timer, timer after admin, two clicks)
        reports already_revealed=True instead of failing, and only the first
        one is broadcast.
        """
        async with self.registry.locked(game_id):
            lie_index, already = await self._run(self._flip_reveal, game_id, requester_session, by_timer)

            if already:
                logger.info("lie_reveal_repeated", extra={"game_id": game_id})
                return RevealResult(game_id=game_id, lie_index=lie_index, already_revealed=True)

            revealed_by = game.REVEALED_BY_TIMER if by_timer else game.REVEALED_BY_ADMIN
            gs = self.registry.get(game_id)
            if gs is not None:
                gs.mark_revealed(lie_index)
            if not by_timer:
                self.timers.cancel(game_id)
            logger.info("lie_revealed", extra={"game_id": game_id, "revealed_by": revealed_by})
            await self._broadcast(
                game_id,
                make_event(LIE_REVEALED, game_id, lieIndex=lie_index, revealedBy=revealed_by),
            )
        return RevealResult(game_id=game_id, lie_index=lie_index, already_revealed=False, revealed_by=revealed_by)

    async def on_timer_expired(self, game_id: str) -> None:
        if self.settings.timer_expiry_mode == TIMER_MODE_HALT:
            # votes are refused from here on by the stored deadline check
            await self._broadcast(game_id, make_event(TIMER_EXPIRED, game_id, votingClosed=True))
            return
        try:
            await self.reveal_lie(game_id, by_timer=True)
        except GameNotFound:
            # swept or deleted while the countdown ran
            logger.info("timer_game_missing", extra={"game_id": game_id})

    # room membership

    async def join(self, game_id: str, connection_id: str, user_session: str, is_admin: bool = False) -> ParticipantSnapshot:
        g, tally = await self._run(self._load, game_id)

        if self.registry.room_of(connection_id) is not None:
            await self.leave(connection_id)

        admin = bool(is_admin) and _same_session(user_session, g.creator_session)
        gs, participant = self.registry.join(g, connection_id, user_session, admin)
        gs.apply_tally(tally)
        state = game.game_state(g, tally, gs.participant_count, now=self._clock())
        logger.info(
            "room_joined",
            extra={"game_id": game_id, "connection_id": connection_id, "count": gs.participant_count},
        )

        await self._reply(connection_id, make_event(GAME_STATE, **state))
        await self._broadcast(
            game_id,
            make_event(PARTICIPANT_JOINED, game_id, userSession=user_session, isAdmin=admin),
            exclude=[connection_id],
        )
        await self._broadcast(game_id, make_event(PARTICIPANT_COUNT_CHANGED, game_id, count=gs.participant_count))
        return ParticipantSnapshot(participant=participant, state=state)

    async def leave(self, connection_id: str) -> None:
        left = self.registry.leave(connection_id)
        if left is None:
            return
        game_id, participant, remaining = left
        logger.info("room_left", extra={"game_id": game_id, "connection_id": connection_id, "count": remaining})
        if remaining:
            await self._broadcast(
                game_id,
                make_event(
                    PARTICIPANT_LEFT, game_id,
                    userSession=participant.user_session, isAdmin=participant.is_admin,
                ),
            )
            await self._broadcast(game_id, make_event(PARTICIPANT_COUNT_CHANGED, game_id, count=remaining))

    def connect(self, ws) -> str:
        return self.broadcaster.register(ws)

    async def disconnect(self, connection_id: str) -> None:
        self.broadcaster.unregister(connection_id)
        await self.leave(connection_id)

    # push-channel commands

    def _member(self, connection_id: str, game_id: str) -> Optional[Participant]:
        if self.registry.room_of(connection_id) != game_id:
            return None
        gs = self.registry.get(game_id)
        return gs.participants.get(connection_id) if gs else None

    async def resync(self, connection_id: str, game_id: str) -> Dict[str, Any]:
        state = await self._run(self.get_game_state, game_id)
        gs = self.registry.get(game_id)
        if gs is not None:
            gs.apply_tally(state["votes"])
        await self._reply(connection_id, make_event(GAME_STATE, **state))
        return state

    async def send_vote_update(self, connection_id: str, game_id: str) -> List[int]:
        if self._member(connection_id, game_id) is None:
            raise Forbidden("Not joined to this game")
        gs = self.registry.get(game_id)
        tally = list(gs.tally) if gs is not None and gs.tally_fresh else await self.recompute_tally(game_id)
        await self._reply(connection_id, make_event(VOTE_TALLY_CHANGED, game_id, votes=tally, totalVotes=sum(tally)))
        return tally

    async def reveal_from_connection(self, connection_id: str, game_id: str) -> RevealResult:
        member = self._member(connection_id, game_id)
        if member is None:
            raise Forbidden("Not authorized to reveal lie")
        result = await self.reveal_lie(game_id, requester_session=member.user_session)
        await self._reply(
            connection_id,
            make_event(
                REVEAL_RESULT, game_id,
                lieIndex=result.lie_index, alreadyRevealed=result.already_revealed,
            ),
        )
        return result

    async def timer_tick(self, connection_id: str, game_id: str, time_remaining: float) -> None:
        member = self._member(connection_id, game_id)
        if member is None or not member.is_admin:
            raise Forbidden("Only the admin can drive the timer display")
        await self._broadcast(
            game_id,
            make_event(TIMER_TICK, game_id, timeRemaining=time_remaining),
            exclude=[connection_id],
        )

    async def handle_message(self, connection_id: str, raw: str) -> None:
        """Run one push-channel frame; failures are reported to the sender only."""
        try:
            cmd = parse_command(raw)
            if isinstance(cmd, JoinGameCommand):
                await self.join(cmd.gameId, connection_id, cmd.userSession, cmd.isAdmin)
            elif isinstance(cmd, ResyncCommand):
                await self.resync(connection_id, cmd.gameId)
            elif isinstance(cmd, RequestVoteUpdateCommand):
                await self.send_vote_update(connection_id, cmd.gameId)
            elif isinstance(cmd, RevealLieCommand):
                await self.reveal_from_connection(connection_id, cmd.gameId)
            elif isinstance(cmd, TimerUpdateCommand):
                await self.timer_tick(connection_id, cmd.gameId, cmd.timeRemaining)
            elif isinstance(cmd, PingCommand):
                await self._reply(connection_id, {"type": PONG})
        except GameError as exc:
            logger.info("ws_command_rejected", extra={"connection_id": connection_id, "error": exc.code})
            await self._reply(connection_id, make_event(ERROR, code=exc.code, message=exc.message))
        except SQLAlchemyError:
            logger.exception("ws_command_storage_error", extra={"connection_id": connection_id})
            err = StorageError()
            await self._reply(connection_id, make_event(ERROR, code=err.code, message=err.message))

    # housekeeping

    async def sweep(self) -> int:
        cutoff = crud.retention_cutoff(self.settings.retention_hours, self._clock())
        deleted = await self._run(self._delete_expired, cutoff)
        for game_id in deleted:
            self.timers.cancel(game_id)
            self.registry.discard(game_id)
        if self.authenticator is not None:
            self.authenticator.purge_expired()
        if deleted:
            logger.info("sweep_deleted", extra={"count": len(deleted)})
        return len(deleted)

    async def _sweep_loop(self) -> None:
        interval = self.settings.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("sweep_failed")
