import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from . import game
from .logging_utils import get_logger

logger = get_logger("twotruths.timers")


class TimerController:
    """One-shot countdown per game.

    The deadline is always derived from the persisted start time, so a
    controller built after a restart reschedules exactly the time that is
    left (or fires immediately when the deadline has passed).
    """

    def __init__(
        self,
        on_expire: Callable[[str], Awaitable[None]],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = game.utcnow,
    ):
        self.on_expire = on_expire
        self._sleep = sleep
        self._clock = clock
        self._tasks: Dict[str, asyncio.Task] = {}

    def schedule(self, game_id: str, start_time: Optional[datetime], duration: Optional[int]) -> Optional[float]:
        """Arm the timer for a game; returns the delay in seconds, None if there is no timer."""
        remaining = game.timer_remaining(start_time, duration, self._clock())
        if remaining is None:
            return None
        self.cancel(game_id)
        task = asyncio.get_running_loop().create_task(self._run(game_id, remaining))
        self._tasks[game_id] = task
        logger.info("timer_scheduled", extra={"game_id": game_id, "count": int(remaining)})
        return remaining

    async def _run(self, game_id: str, delay: float) -> None:
        try:
            if delay > 0:
                await self._sleep(delay)
            logger.info("timer_expired", extra={"game_id": game_id})
            await self.on_expire(game_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("timer_expiry_failed", extra={"game_id": game_id})
        finally:
            if self._tasks.get(game_id) is asyncio.current_task():
                self._tasks.pop(game_id, None)

    def cancel(self, game_id: str) -> bool:
        task = self._tasks.pop(game_id, None)
        if task is None:
            return False
        task.cancel()
        return True

    def is_scheduled(self, game_id: str) -> bool:
        return game_id in self._tasks

    def pending(self) -> List[str]:
        return list(self._tasks)

    async def wait(self, game_id: str) -> None:
        task = self._tasks.get(game_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
