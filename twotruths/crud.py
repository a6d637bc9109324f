from sqlmodel import Session, SQLModel, create_engine, select as sqlmodel_select
from sqlalchemy import event, func, select as sa_select, update, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from . import models, game
from .errors import DuplicateVote, GameNotFound, StorageError


engine = None


def _enable_sqlite_foreign_keys(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(url: str):
    """Build an engine for the given URL; SQLite gets FK enforcement for vote cascades."""
    if url.startswith("sqlite"):
        eng = create_engine(url, echo=False, connect_args={"check_same_thread": False})
        event.listen(eng, "connect", _enable_sqlite_foreign_keys)
        return eng
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=1800,
    )


def init_engine(url: str):
    global engine
    engine = make_engine(url)
    SQLModel.metadata.create_all(engine)
    return engine


def create_game(
    session: Session,
    creator_session: str,
    teammate_name: str,
    statements: List[str],
    lie_index: int,
    teammate_picture: Optional[str] = None,
    timer_duration: Optional[int] = None,
    background_music: Optional[str] = None,
) -> models.Game:
    now = game.utcnow()
    g = models.Game(
        id=game.new_game_id(),
        creator_session=creator_session,
        teammate_name=teammate_name,
        teammate_picture=teammate_picture,
        statement_1=statements[0],
        statement_2=statements[1],
        statement_3=statements[2],
        lie_index=lie_index,
        timer_duration=timer_duration or None,
        # the countdown starts the moment the game exists
        timer_start_time=now if timer_duration else None,
        background_music=background_music,
        lie_revealed=False,
        game_started=True,
        created_at=now,
        updated_at=now,
    )
    try:
        session.add(g)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StorageError("Failed to create game") from exc
    session.refresh(g)
    return g


def get_game(session: Session, game_id: str) -> Optional[models.Game]:
    if not game_id:
        return None
    return session.get(models.Game, game_id)


def conditional_reveal_lie(session: Session, game_id: str) -> Tuple[int, bool]:
    """Flip lie_revealed false -> true exactly once.

    Returns (lie_index, was_already_revealed). Only the caller that actually
    flipped the flag gets was_already_revealed=False.
    """
    try:
        result = session.execute(
            update(models.Game)
            .where(models.Game.id == game_id)
            .where(models.Game.lie_revealed == False)  # noqa: E712
            .values(lie_revealed=True, updated_at=game.utcnow())
        )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StorageError("Failed to reveal lie") from exc

    g = session.get(models.Game, game_id)
    if g is None:
        raise GameNotFound()
    session.refresh(g)
    return g.lie_index, result.rowcount == 0


def insert_vote_if_absent(
    session: Session,
    game_id: str,
    user_session: str,
    voted_statement: int,
    user_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> models.Vote:
    # no existence pre-check: the unique constraint is the only arbiter
    v = models.Vote(
        game_id=game_id,
        user_session=user_session,
        voted_statement=voted_statement,
        user_ip=user_ip,
        user_agent=user_agent,
        voted_at=game.utcnow(),
    )
    try:
        session.add(v)
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        if session.get(models.Game, game_id) is None:
            raise GameNotFound() from exc
        raise DuplicateVote() from exc
    except SQLAlchemyError as exc:
        session.rollback()
        raise StorageError("Failed to record vote") from exc
    session.refresh(v)
    return v


def tally_votes(session: Session, game_id: str) -> List[int]:
    rows = session.execute(
        sa_select(models.Vote.voted_statement, func.count(models.Vote.id))
        .where(models.Vote.game_id == game_id)
        .group_by(models.Vote.voted_statement)
    ).all()
    return game.tally_from_counts(rows)


def get_vote(session: Session, game_id: str, user_session: str) -> Optional[models.Vote]:
    return session.exec(
        sqlmodel_select(models.Vote)
        .where(models.Vote.game_id == game_id)
        .where(models.Vote.user_session == user_session)
    ).first()


def list_votes(session: Session, game_id: str) -> List[models.Vote]:
    return list(session.exec(
        sqlmodel_select(models.Vote)
        .where(models.Vote.game_id == game_id)
        .order_by(models.Vote.voted_at)
    ).all())


def vote_stats(session: Session, game_id: str) -> Dict[str, Any]:
    """Return {totalVotes, breakdown} where each breakdown row also lists vote times."""
    votes = list_votes(session, game_id)
    tally = game.empty_tally()
    times: List[List[Optional[str]]] = [[] for _ in range(game.STATEMENT_COUNT)]
    for v in votes:
        if game.is_valid_statement_index(v.voted_statement):
            tally[v.voted_statement] += 1
            times[v.voted_statement].append(game.isoformat(v.voted_at))
    rows = game.breakdown(tally)
    for row in rows:
        row["voteTimes"] = times[row["statement"]]
    return {"totalVotes": sum(tally), "breakdown": rows}


def list_running_timers(session: Session) -> List[models.Game]:
    """Unrevealed games whose countdown was started; used to reschedule after a restart."""
    return list(session.exec(
        sqlmodel_select(models.Game)
        .where(models.Game.lie_revealed == False)  # noqa: E712
        .where(models.Game.timer_duration != None)  # noqa: E711
        .where(models.Game.timer_start_time != None)  # noqa: E711
    ).all())


def delete_games_older_than(session: Session, cutoff: datetime) -> List[str]:
    """Delete revealed games created before cutoff, with their votes. Returns deleted ids."""
    ids = list(session.exec(
        sqlmodel_select(models.Game.id)
        .where(models.Game.created_at < cutoff)
        .where(models.Game.lie_revealed == True)  # noqa: E712
    ).all())
    if not ids:
        return []
    try:
        # explicit vote delete keeps the cascade working where FKs are not enforced
        session.execute(delete(models.Vote).where(models.Vote.game_id.in_(ids)))
        session.execute(delete(models.Game).where(models.Game.id.in_(ids)))
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StorageError("Failed to delete old games") from exc
    return ids


def retention_cutoff(hours: int, now: Optional[datetime] = None) -> datetime:
    return (now or game.utcnow()) - timedelta(hours=hours)
