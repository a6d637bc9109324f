"""
Cross-process event bridge.

Room state lives in one process; when several workers serve the same games,
every room event is also published to NATS so the other workers can fan it
out to their own connections. Without NATS_URL this is a no-op.

Subject: game.<game_id>.events
"""
from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Optional

import nats

from .logging_utils import get_logger

logger = get_logger("twotruths.realtime")


def subject_for(game_id: str) -> str:
    return f"game.{game_id}.events"


def envelope(game_id: str, event: dict[str, Any], origin: str) -> dict[str, Any]:
    return {
        "v": 1,
        "type": event.get("type"),
        "game": game_id,
        "origin": origin,
        "id": os.urandom(8).hex(),
        "ts": datetime.now(timezone.utc).isoformat(),
        "payload": event,
    }


class NatsPublisher:
    def __init__(self, url: Optional[str], name: str = "twotruths"):
        self.url = url
        self.name = name
        self.origin = os.urandom(4).hex()
        self._nc = None

    async def _connect_once(self) -> None:
        if self._nc or not self.url:
            return
        try:
            self._nc = await nats.connect(self.url, name=self.name)
            logger.info("nats_connected")
        except Exception as exc:
            logger.warning("nats_connect_failed", extra={"error": str(exc)})
            self._nc = None

    async def __call__(self, game_id: str, event: dict[str, Any]) -> None:
        await self._connect_once()
        if not self._nc:
            return
        data = json.dumps(envelope(game_id, event, self.origin)).encode("utf-8")
        try:
            await self._nc.publish(subject_for(game_id), data)
        except Exception as exc:
            logger.debug("nats_publish_failed", extra={"game_id": game_id, "error": str(exc)})

    async def close(self) -> None:
        if self._nc is not None:
            try:
                await self._nc.drain()
            except Exception as exc:
                logger.debug("nats_drain_failed", extra={"error": str(exc)})
            self._nc = None
