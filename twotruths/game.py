import datetime
import uuid
from typing import Any, Dict, List, Optional, Sequence


STATEMENT_COUNT = 3
LIE_INDICES = range(STATEMENT_COUNT)

REVEALED_BY_ADMIN = "admin"
REVEALED_BY_TIMER = "timer"


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(ts: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    # SQLite hands datetimes back naive; they are always stored as UTC
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=datetime.timezone.utc)
    return ts


def isoformat(ts: Optional[datetime.datetime]) -> Optional[str]:
    ts = as_utc(ts)
    return ts.isoformat() if ts is not None else None


def new_game_id() -> str:
    return str(uuid.uuid4())


def is_valid_statement_index(value: Any) -> bool:
    # bool is an int subclass; True must not count as statement 1
    return isinstance(value, int) and not isinstance(value, bool) and value in LIE_INDICES


def empty_tally() -> List[int]:
    return [0] * STATEMENT_COUNT


def tally_from_counts(rows) -> List[int]:
    """Fold (statement, count) rows into a fixed 3-slot tally."""
    tally = empty_tally()
    for statement, count in rows:
        if is_valid_statement_index(statement):
            tally[statement] = int(count)
    return tally


def percentages(tally: Sequence[int]) -> List[int]:
    total = sum(tally)
    if total <= 0:
        return [0] * len(tally)
    # halves round up
    return [int(count * 100 / total + 0.5) for count in tally]


def breakdown(tally: Sequence[int]) -> List[Dict[str, int]]:
    return [
        {"statement": i, "votes": count, "percentage": pct}
        for i, (count, pct) in enumerate(zip(tally, percentages(tally)))
    ]


def timer_deadline(start: Optional[datetime.datetime], duration: Optional[int]) -> Optional[datetime.datetime]:
    start = as_utc(start)
    if start is None or not duration:
        return None
    return start + datetime.timedelta(seconds=duration)


def timer_remaining(
    start: Optional[datetime.datetime],
    duration: Optional[int],
    now: Optional[datetime.datetime] = None,
) -> Optional[float]:
    """Seconds left on the countdown, derived from the persisted start time.

    Returns None when the game has no timer, 0 once it has run out.
    """
    deadline = timer_deadline(start, duration)
    if deadline is None:
        return None
    now = now or utcnow()
    return max(0.0, (deadline - now).total_seconds())


def timer_expired(game, now: Optional[datetime.datetime] = None) -> bool:
    remaining = timer_remaining(game.timer_start_time, game.timer_duration, now)
    return remaining is not None and remaining <= 0


def game_state(game, tally: Sequence[int], participants: int = 0, now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    """Full snapshot a client needs to render a game from scratch.

    The lie index stays hidden until the reveal has happened.
    """
    return {
        "gameId": game.id,
        "teammate_name": game.teammate_name,
        "teammate_picture": game.teammate_picture,
        "statements": game.statements,
        "lie_index": game.lie_index if game.lie_revealed else None,
        "lie_revealed": game.lie_revealed,
        "game_started": game.game_started,
        "timer_duration": game.timer_duration,
        "timer_start_time": isoformat(game.timer_start_time),
        "timer_remaining": timer_remaining(game.timer_start_time, game.timer_duration, now),
        "background_music": game.background_music,
        "votes": list(tally),
        "totalVotes": sum(tally),
        "participants": participants,
        "created_at": isoformat(game.created_at),
    }
