import json

import httpx
import pytest

from twotruths.client import ApiError, GameClient


def make_client(handler, **kw):
    delays = []
    c = GameClient(
        "http://game.test",
        user_session="A",
        transport=httpx.MockTransport(handler),
        sleep=delays.append,
        **kw,
    )
    return c, delays


def test_read_retries_on_5xx_then_succeeds():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        if len(calls) < 3:
            return httpx.Response(503, json={"success": False, "message": "busy"})
        return httpx.Response(200, json={"success": True, "game": {"gameId": "g1", "votes": [1, 0, 0]}})

    c, delays = make_client(handler, max_attempts=3, backoff_base=0.5)
    assert c.get_game("g1")["votes"] == [1, 0, 0]
    assert calls == ["/api/games/g1"] * 3
    assert delays == [0.5, 1.0]


def test_read_retries_are_bounded():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    c, delays = make_client(handler, max_attempts=2)
    with pytest.raises(httpx.ConnectError):
        c.get_stats("g1")
    assert len(delays) == 1


def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(404, json={
            "success": False, "error": {"message": "Game not found", "code": "GAME_NOT_FOUND"},
            "message": "Game not found",
        })

    c, delays = make_client(handler)
    with pytest.raises(ApiError) as exc:
        c.get_game("ghost-1")
    assert exc.value.status_code == 404
    assert exc.value.code == "GAME_NOT_FOUND"
    assert len(calls) == 1 and delays == []


def test_writes_are_sent_once_with_session():
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path, json.loads(request.content), request.headers.get("authorization")))
        if request.url.path == "/api/auth/login":
            return httpx.Response(200, json={"success": True, "session": "tok"})
        if request.url.path == "/api/games":
            return httpx.Response(201, json={"success": True, "game": {"id": "g1"}})
        return httpx.Response(503, json={"message": "down"})

    c, delays = make_client(handler)
    assert c.login("host", "pw") == "tok"
    assert c.create_game(teammate_name="Sam", lie_index=1)["id"] == "g1"
    assert seen[1][2]["creator_session"] == "A"
    assert seen[1][3] == "Bearer tok"

    with pytest.raises(ApiError) as exc:
        c.vote("g1", 2)
    assert exc.value.status_code == 503
    assert seen[2][2] == {"game_id": "g1", "voted_statement": 2, "user_session": "A"}
    assert len(seen) == 3 and delays == []
