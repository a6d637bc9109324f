"""
Room fan-out for push connections.

Delivery is best effort: one send attempt per connection per event, no
buffering and no replay. A client that misses events is expected to send a
resync command and rebuild from the store.
"""
import json
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from . import game
from .logging_utils import get_logger
from .sessions import SessionRegistry

logger = get_logger("twotruths.broadcast")

# room events
PARTICIPANT_JOINED = "participantJoined"
PARTICIPANT_LEFT = "participantLeft"
PARTICIPANT_COUNT_CHANGED = "participantCountChanged"
VOTE_TALLY_CHANGED = "voteTallyChanged"
LIE_REVEALED = "lieRevealed"
TIMER_TICK = "timerTick"
TIMER_EXPIRED = "timerExpired"

# targeted replies
GAME_STATE = "gameState"
REVEAL_RESULT = "revealResult"
ERROR = "error"
PONG = "pong"

Publisher = Callable[[str, Dict[str, Any]], Awaitable[None]]


def make_event(kind: str, game_id: Optional[str] = None, **fields) -> Dict[str, Any]:
    ev: Dict[str, Any] = {"type": kind}
    if game_id is not None:
        ev["gameId"] = game_id
    ev.update(fields)
    ev["timestamp"] = game.utcnow().isoformat()
    return ev


def _prepare_message(e: dict) -> Optional[str]:
    """Serialize event to JSON."""
    try:
        return json.dumps(e)
    except (TypeError, ValueError):
        return None


async def _send_to_websocket(ws, msg: Optional[str], ev: dict) -> bool:
    """Send one event to one socket. Return False if the socket is dead."""
    try:
        if msg is not None:
            await ws.send_text(msg)
        else:
            await ws.send_json(ev)
        return True
    except Exception as send_exc:
        logger.debug("ws_send_error", extra={"error": str(send_exc)})
        return False


class BroadcastEngine:
    def __init__(self, registry: SessionRegistry, publisher: Optional[Publisher] = None):
        self.registry = registry
        self.connections: Dict[str, Any] = {}
        self.publisher = publisher

    def register(self, ws, connection_id: Optional[str] = None) -> str:
        cid = connection_id or uuid.uuid4().hex
        self.connections[cid] = ws
        logger.debug("ws_registered", extra={"connection_id": cid, "ws_count": len(self.connections)})
        return cid

    def unregister(self, connection_id: str) -> None:
        self.connections.pop(connection_id, None)

    async def send_to(self, connection_id: str, event: Dict[str, Any]) -> bool:
        ws = self.connections.get(connection_id)
        if ws is None:
            return False
        ok = await _send_to_websocket(ws, _prepare_message(event), event)
        if not ok:
            self.unregister(connection_id)
        return ok

    async def emit(self, game_id: str, event: Dict[str, Any], exclude: Iterable[str] = ()) -> List[str]:
        """Send an event to every member of a game's room.

        Returns the connection ids whose send failed; those are already
        unregistered here and the caller is responsible for removing them
        from their room.
        """
        skip = set(exclude)
        targets = [p.connection_id for p in self.registry.members(game_id) if p.connection_id not in skip]
        message = _prepare_message(event)
        dead: List[str] = []
        for cid in targets:
            ws = self.connections.get(cid)
            if ws is None or not await _send_to_websocket(ws, message, event):
                dead.append(cid)
        for cid in dead:
            self.unregister(cid)
        logger.debug(
            "broadcast",
            extra={"game_id": game_id, "event": event.get("type"), "ws_count": len(targets) - len(dead)},
        )
        if self.publisher is not None:
            await self.publisher(game_id, event)
        return dead

    def clear(self) -> None:
        self.connections.clear()
