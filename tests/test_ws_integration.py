import json

CREATOR = "creator-1"


def create_game(client, token, lie_index=1):
    r = client.post(
        '/api/games',
        json={
            "teammate_name": "Sam",
            "statement_1": "I have a cat",
            "statement_2": "I climbed Everest",
            "statement_3": "I speak 4 languages",
            "lie_index": lie_index,
            "creator_session": CREATOR,
        },
        headers={"Authorization": f"Bearer {token}"},
    )
    assert r.status_code == 201
    return r.json()["game"]["id"]


def join(ws, gid, user_session, is_admin=False):
    ws.send_text(json.dumps({"type": "joinGame", "gameId": gid, "userSession": user_session, "isAdmin": is_admin}))
    state = ws.receive_json()
    assert state["type"] == "gameState"
    count = ws.receive_json()
    assert count["type"] == "participantCountChanged"
    return state, count


def test_ws_join_and_vote_broadcast(client, admin_token):
    gid = create_game(client, admin_token)
    with client.websocket_connect('/ws') as ws:
        state, count = join(ws, gid, "viewer-1")
        assert state["gameId"] == gid
        assert state["lie_index"] is None
        assert count["count"] == 1

        r = client.post('/api/votes', json={"game_id": gid, "voted_statement": 2, "user_session": "A"})
        assert r.status_code == 201
        msg = ws.receive_json()
        assert msg["type"] == "voteTallyChanged"
        assert msg["votes"] == [0, 0, 1]
        assert msg["totalVotes"] == 1

        # pull path agrees with the push
        assert client.get(f'/api/games/{gid}').json()["game"]["votes"] == msg["votes"]


def test_ws_unknown_game_and_malformed(client):
    with client.websocket_connect('/ws') as ws:
        ws.send_text(json.dumps({"type": "joinGame", "gameId": "ghost-1", "userSession": "A"}))
        err = ws.receive_json()
        assert err["type"] == "error"
        assert err["code"] == "GAME_NOT_FOUND"

        ws.send_text('{"type": "joinGame"')
        err = ws.receive_json()
        assert err["code"] == "INVALID_INPUT"

        ws.send_text(json.dumps({"type": "ping"}))
        assert ws.receive_json() == {"type": "pong"}


def test_ws_admin_reveal_reaches_room(client, admin_token):
    gid = create_game(client, admin_token, lie_index=0)
    with client.websocket_connect('/ws') as admin:
        join(admin, gid, CREATOR, is_admin=True)
        with client.websocket_connect('/ws') as viewer:
            _, count = join(viewer, gid, "viewer-1")
            assert count["count"] == 2
            assert admin.receive_json()["type"] == "participantJoined"
            assert admin.receive_json()["count"] == 2

            admin.send_text(json.dumps({"type": "timerUpdate", "gameId": gid, "timeRemaining": 12}))
            tick = viewer.receive_json()
            assert tick["type"] == "timerTick" and tick["timeRemaining"] == 12

            admin.send_text(json.dumps({"type": "revealLie", "gameId": gid}))
            revealed = viewer.receive_json()
            assert revealed["type"] == "lieRevealed"
            assert revealed["lieIndex"] == 0
            assert revealed["revealedBy"] == "admin"
            assert admin.receive_json()["type"] == "lieRevealed"
            result = admin.receive_json()
            assert result["type"] == "revealResult"
            assert result["alreadyRevealed"] is False

        left = admin.receive_json()
        assert left["type"] == "participantLeft"
        assert admin.receive_json()["count"] == 1


def test_ws_storage_failure_keeps_connection(client, admin_token, monkeypatch):
    from sqlalchemy.exc import OperationalError
    from twotruths import crud

    gid = create_game(client, admin_token)
    with client.websocket_connect('/ws') as ws:
        join(ws, gid, "viewer-1")

        def broken_tally(s, game_id):
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(crud, "tally_votes", broken_tally)
        ws.send_text(json.dumps({"type": "resync", "gameId": gid}))
        err = ws.receive_json()
        assert err["type"] == "error"
        assert err["code"] == "SERVICE_ERROR"

        monkeypatch.undo()
        ws.send_text(json.dumps({"type": "resync", "gameId": gid}))
        assert ws.receive_json()["type"] == "gameState"
