import pytest

from twotruths.config import TIMER_MODE_HALT, TIMER_MODE_REVEAL, Settings
from twotruths.errors import InvalidInput, VotingClosed
from twotruths.schemas import JoinGameCommand, TimerUpdateCommand, parse_command


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://db/game")
    monkeypatch.setenv("TIMER_EXPIRY_MODE", "HALT")
    monkeypatch.setenv("RETENTION_HOURS", "6")
    monkeypatch.setenv("SWEEP_INTERVAL_SECONDS", "oops")
    monkeypatch.setenv("FRONTEND_URL", "https://party.example")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example")
    s = Settings.from_env()
    assert not s.is_sqlite
    assert s.timer_expiry_mode == TIMER_MODE_HALT
    assert s.retention_hours == 6
    assert s.sweep_interval_seconds == 1800
    assert s.cors_origins[0] == "https://party.example"
    assert "https://b.example" in s.cors_origins


def test_unknown_timer_mode_falls_back(monkeypatch):
    monkeypatch.setenv("TIMER_EXPIRY_MODE", "explode")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    s = Settings.from_env()
    assert s.timer_expiry_mode == TIMER_MODE_REVEAL
    assert s.is_sqlite


def test_parse_command():
    cmd = parse_command('{"type": "joinGame", "gameId": "g1", "userSession": "A"}')
    assert isinstance(cmd, JoinGameCommand)
    assert cmd.isAdmin is False
    assert isinstance(parse_command('{"type": "timerUpdate", "gameId": "g1", "timeRemaining": 3.5}'), TimerUpdateCommand)

    for raw in ('[]', '{"type": "nope"}', '{"type": "joinGame", "gameId": ""}', '{"type": "timerUpdate", "gameId": "g1", "timeRemaining": -1}'):
        with pytest.raises(InvalidInput):
            parse_command(raw)


def test_error_payloads():
    err = VotingClosed()
    assert isinstance(err, InvalidInput)
    assert err.status_code == 409
    assert err.to_payload() == {
        "success": False,
        "error": {"message": "Voting is closed for this game", "code": "VOTING_CLOSED"},
        "message": "Voting is closed for this game",
    }
    assert InvalidInput("bad").to_payload()["message"] == "bad"
