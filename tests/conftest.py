import sys
from pathlib import Path
import pytest

# Ensure project root is on sys.path so tests can import the `twotruths` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_USER = "host"
ADMIN_PASS = "Secret123"


@pytest.fixture(autouse=True)
def reset_engine():
	# Each test points crud at its own database
	from twotruths import crud
	previous = crud.engine
	yield
	crud.engine = previous


@pytest.fixture
def client(tmp_path, monkeypatch):
	from fastapi.testclient import TestClient
	from twotruths.main import app

	monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'api.db'}")
	monkeypatch.setenv("ADMIN_USERNAME", ADMIN_USER)
	monkeypatch.setenv("ADMIN_PASSWORD", ADMIN_PASS)
	monkeypatch.setenv("SWEEP_INTERVAL_SECONDS", "0")
	monkeypatch.delenv("ADMIN_PASSWORD_HASH", raising=False)
	monkeypatch.delenv("NATS_URL", raising=False)
	monkeypatch.delenv("TIMER_EXPIRY_MODE", raising=False)
	with TestClient(app) as c:
		yield c


@pytest.fixture
def admin_token(client):
	r = client.post("/api/auth/login", json={"username": ADMIN_USER, "password": ADMIN_PASS})
	assert r.status_code == 200
	return r.json()["session"]
