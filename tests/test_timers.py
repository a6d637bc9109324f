import asyncio
from datetime import datetime, timedelta, timezone

from twotruths.timers import TimerController

START = datetime(2099, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


def test_schedule_uses_remaining_time():
    async def scenario():
        fired = []
        sleep = RecordingSleep()

        async def on_expire(game_id):
            fired.append(game_id)

        timers = TimerController(on_expire, sleep=sleep, clock=lambda: START + timedelta(seconds=4))
        assert timers.schedule("g1", START, 10) == 6.0
        assert timers.schedule("g2", START, None) is None
        assert timers.is_scheduled("g1") and not timers.is_scheduled("g2")
        await timers.wait("g1")
        assert fired == ["g1"]
        assert sleep.delays == [6.0]
        assert timers.pending() == []

    asyncio.run(scenario())


def test_overdue_timer_fires_without_sleeping():
    async def scenario():
        fired = []
        sleep = RecordingSleep()

        async def on_expire(game_id):
            fired.append(game_id)

        timers = TimerController(on_expire, sleep=sleep, clock=lambda: START + timedelta(minutes=5))
        assert timers.schedule("g1", START, 10) == 0.0
        await timers.wait("g1")
        assert fired == ["g1"]
        assert sleep.delays == []

    asyncio.run(scenario())


def test_cancel_and_shutdown():
    async def scenario():
        fired = []

        async def on_expire(game_id):
            fired.append(game_id)

        timers = TimerController(on_expire, clock=lambda: START)
        timers.schedule("g1", START, 60)
        timers.schedule("g2", START, 60)
        assert timers.cancel("g1") is True
        assert timers.cancel("g1") is False
        await timers.shutdown()
        assert timers.pending() == []
        assert fired == []

    asyncio.run(scenario())


def test_expiry_errors_are_contained():
    async def scenario():
        async def on_expire(game_id):
            raise RuntimeError("store down")

        timers = TimerController(on_expire, sleep=RecordingSleep(), clock=lambda: START)
        timers.schedule("g1", START, 1)
        await timers.wait("g1")
        assert not timers.is_scheduled("g1")

    asyncio.run(scenario())
