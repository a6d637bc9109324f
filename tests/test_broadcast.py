import anyio
import asyncio
import json
from types import SimpleNamespace

from twotruths.broadcast import BroadcastEngine, _prepare_message, _send_to_websocket, make_event
from twotruths.sessions import SessionRegistry


class FakeWS:
    def __init__(self):
        self.sent = []

    async def send_text(self, msg: str):
        await asyncio.sleep(0)
        self.sent.append(json.loads(msg))

    async def send_json(self, obj):
        await asyncio.sleep(0)
        self.sent.append(obj)


class BoomWS:
    async def send_text(self, s: str):
        raise RuntimeError('boom')

    async def send_json(self, obj):
        raise RuntimeError('boom')


def room(reg, game_id, *cids):
    g = SimpleNamespace(id=game_id, lie_revealed=False, lie_index=0, timer_duration=None, timer_start_time=None)
    for cid in cids:
        reg.join(g, cid, f"user-{cid}", False)


def test_prepare_message_and_fallback():
    assert json.loads(_prepare_message({"type": "x", "n": 1})) == {"type": "x", "n": 1}
    assert _prepare_message({"bad": object()}) is None

    ws = FakeWS()
    assert anyio.run(_send_to_websocket, ws, None, {"type": "raw"}) is True
    assert ws.sent == [{"type": "raw"}]
    assert anyio.run(_send_to_websocket, BoomWS(), '{}', {}) is False


def test_make_event_fields():
    ev = make_event("voteTallyChanged", "g1", votes=[1, 0, 0])
    assert ev["type"] == "voteTallyChanged"
    assert ev["gameId"] == "g1"
    assert ev["votes"] == [1, 0, 0]
    assert "timestamp" in ev
    assert "gameId" not in make_event("pong")


def test_emit_reaches_only_the_room():
    reg = SessionRegistry()
    engine = BroadcastEngine(reg)
    a, b, other = FakeWS(), FakeWS(), FakeWS()
    engine.register(a, "a")
    engine.register(b, "b")
    engine.register(other, "o")
    room(reg, "g1", "a", "b")
    room(reg, "g2", "o")

    dead = anyio.run(engine.emit, "g1", {"type": "x"})
    assert dead == []
    assert len(a.sent) == 1 and len(b.sent) == 1
    assert other.sent == []

    anyio.run(lambda: engine.emit("g1", {"type": "y"}, exclude=["a"]))
    assert [e["type"] for e in a.sent] == ["x"]
    assert [e["type"] for e in b.sent] == ["x", "y"]


def test_emit_reports_and_unregisters_dead_connections():
    reg = SessionRegistry()
    engine = BroadcastEngine(reg)
    ok = FakeWS()
    engine.register(ok, "ok")
    engine.register(BoomWS(), "boom")
    room(reg, "g1", "ok", "boom", "never-registered")

    dead = anyio.run(engine.emit, "g1", {"type": "x"})
    assert sorted(dead) == ["boom", "never-registered"]
    assert "boom" not in engine.connections
    assert len(ok.sent) == 1


def test_send_to_and_publisher():
    published = []

    async def publisher(game_id, event):
        published.append((game_id, event["type"]))

    reg = SessionRegistry()
    engine = BroadcastEngine(reg, publisher=publisher)
    ws = FakeWS()
    cid = engine.register(ws)
    assert len(cid) == 32
    room(reg, "g1", cid)

    assert anyio.run(engine.send_to, cid, {"type": "gameState"}) is True
    assert anyio.run(engine.send_to, "missing", {"type": "gameState"}) is False
    anyio.run(engine.emit, "g1", {"type": "lieRevealed"})
    # targeted replies are not published, room events are
    assert published == [("g1", "lieRevealed")]
