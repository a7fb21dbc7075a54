"""
Spectator session runtime: real timers and tasks, fake ledger, plus one end-to-end draw where
the host session and a spectator share a channel hub and the database.
"""

import asyncio

from backend.api.channels import ChannelHub
from backend.api.database import SessionLocal
from backend.api.draws import execute_draw, get_winner, latest_draw
from backend.engine import COUNTDOWN, ERROR, REDRAW, SPINNING, WAITING, WINNER
from backend.engine import events
from backend.engine.events import DrawEvent
from backend.engine.reducer import PhaseSettings
from backend.engine.redraw import HostDrawSession
from backend.engine.selector import ScriptedPicker
from backend.engine.spectator import SpectatorSession

FAST = PhaseSettings(countdown_ticks=1, redraw_delay=0.01, winner_timeout=0.2)
WINNER_DATA = {"ticket_number": 5, "player_name": "Jane D."}


class QueueChannel:
    """Async iterable fed by the test, standing in for a channel subscription."""

    def __init__(self):
        self.queue = asyncio.Queue()

    def send(self, event: DrawEvent) -> None:
        self.queue.put_nowait(event)

    def __aiter__(self):
        return self

    async def __anext__(self) -> DrawEvent:
        return await self.queue.get()


class FakeLedger:
    def __init__(self, winner=WINNER_DATA):
        self.rows = []
        self.winner = winner

    def record(self, number: int, won: bool) -> None:
        self.rows.append({
            "attempt": len(self.rows) + 1,
            "winning_ticket_id": "ticket-1" if won else None,
            "audit_json": {"winning_number": number},
        })

    async def latest(self):
        return self.rows[-1] if self.rows else None

    async def fetch_winner(self):
        if any(r["winning_ticket_id"] for r in self.rows):
            return self.winner
        return None


async def wait_for_phase(session: SpectatorSession, phase: str, timeout: float = 2.0) -> None:
    async def poll():
        while session.state.phase != phase:
            await asyncio.sleep(0.005)
    await asyncio.wait_for(poll(), timeout)


def make_session(ledger, channel=None, **kwargs) -> SpectatorSession:
    return SpectatorSession(
        max_tickets=10,
        channel=channel,
        fetch_latest_draw=ledger.latest,
        fetch_winner=ledger.fetch_winner,
        settings=FAST,
        countdown_tick_seconds=0.001,
        status_poll_seconds=0,
        **kwargs,
    )


def test_miss_then_winner_over_channel():
    async def scenario():
        ledger = FakeLedger()
        channel = QueueChannel()
        session = make_session(ledger, channel)
        runner = asyncio.ensure_future(session.run())

        channel.send(events.draw_started())
        await wait_for_phase(session, COUNTDOWN)
        ledger.record(2, won=False)
        channel.send(events.spinning())
        await wait_for_phase(session, REDRAW)
        ledger.record(5, won=True)
        channel.send(events.spinning())
        final = await asyncio.wait_for(runner, 2)
        return session, final

    session, final = asyncio.run(scenario())
    assert final.phase == WINNER
    assert final.winner == WINNER_DATA
    assert final.attempt == 2
    assert session.history == [WAITING, COUNTDOWN, SPINNING, REDRAW, SPINNING, WINNER]
    assert not session._timers
    assert not session._tasks


def test_malformed_channel_events_are_ignored():
    async def scenario():
        ledger = FakeLedger()
        ledger.record(5, won=True)
        channel = QueueChannel()
        session = make_session(ledger, channel)
        runner = asyncio.ensure_future(session.run())
        channel.send(DrawEvent("phase_change", {"phase": "confetti"}))
        channel.send(DrawEvent("fireworks", {}))
        channel.send(events.draw_started())
        channel.send(events.spinning())
        return await asyncio.wait_for(runner, 2)

    assert asyncio.run(scenario()).phase == WINNER


def test_joining_after_the_draw_shows_winner():
    async def scenario():
        ledger = FakeLedger()
        ledger.record(5, won=True)
        session = make_session(ledger, initial_status="drawn")
        final = await asyncio.wait_for(session.run(), 2)
        return session, final

    session, final = asyncio.run(scenario())
    assert final.phase == WINNER
    assert session.history == [WAITING, WINNER]


def test_status_poll_recovers_missed_broadcasts():
    statuses = iter(["locked", "locked", "drawn"])

    async def fetch_status():
        return next(statuses, "drawn")

    async def scenario():
        ledger = FakeLedger()
        ledger.record(5, won=True)
        session = SpectatorSession(
            max_tickets=10,
            channel=None,
            fetch_latest_draw=ledger.latest,
            fetch_winner=ledger.fetch_winner,
            fetch_game_status=fetch_status,
            initial_status="open",
            settings=FAST,
            countdown_tick_seconds=0.001,
            status_poll_seconds=0.01,
        )
        final = await asyncio.wait_for(session.run(), 2)
        return session, final

    session, final = asyncio.run(scenario())
    assert final.phase == WINNER
    assert session.history == [WAITING, COUNTDOWN, WINNER]


def test_opening_a_locked_game_waits_for_the_host():
    async def fetch_status():
        return "locked"

    async def scenario():
        ledger = FakeLedger()
        session = SpectatorSession(
            max_tickets=10,
            channel=None,
            fetch_latest_draw=ledger.latest,
            fetch_winner=ledger.fetch_winner,
            fetch_game_status=fetch_status,
            initial_status="locked",
            settings=FAST,
            countdown_tick_seconds=0.001,
            status_poll_seconds=0.01,
        )
        runner = asyncio.ensure_future(session.run())
        await asyncio.sleep(0.1)
        state = session.state
        runner.cancel()
        await asyncio.gather(runner, return_exceptions=True)
        return session, state

    session, state = asyncio.run(scenario())
    assert state.phase == WAITING
    assert session.history == [WAITING]


def test_failed_winner_fetch_is_retried_while_game_is_drawn():
    calls = []

    async def fetch_status():
        return "drawn"

    async def flaky_winner():
        calls.append(1)
        if len(calls) == 1:
            raise ConnectionError("network down")
        return WINNER_DATA

    async def scenario():
        ledger = FakeLedger()
        session = SpectatorSession(
            max_tickets=10,
            channel=None,
            fetch_latest_draw=ledger.latest,
            fetch_winner=flaky_winner,
            fetch_game_status=fetch_status,
            initial_status="drawn",
            settings=FAST,
            countdown_tick_seconds=0.001,
            status_poll_seconds=0.01,
        )
        return await asyncio.wait_for(session.run(), 2)

    final = asyncio.run(scenario())
    assert final.phase == WINNER
    assert final.winner == WINNER_DATA
    assert len(calls) >= 2


def test_winner_data_never_arriving_ends_in_error():
    async def scenario():
        ledger = FakeLedger(winner=None)
        ledger.record(5, won=True)
        channel = QueueChannel()
        session = make_session(ledger, channel)
        runner = asyncio.ensure_future(session.run())
        channel.send(events.spinning())
        final = await asyncio.wait_for(runner, 2)
        return session, final

    session, final = asyncio.run(scenario())
    assert final.phase == ERROR
    assert not session._timers


def test_failing_fetch_does_not_crash_the_session():
    calls = {"n": 0}

    async def flaky_latest():
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConnectionError("offline")
        return {"attempt": 1, "winning_ticket_id": "t", "audit_json": {"winning_number": 5}}

    async def scenario():
        channel = QueueChannel()
        session = SpectatorSession(
            max_tickets=10,
            channel=channel,
            fetch_latest_draw=flaky_latest,
            fetch_winner=lambda: asyncio.sleep(0, result=WINNER_DATA),
            settings=FAST,
            status_poll_seconds=0,
        )
        runner = asyncio.ensure_future(session.run())
        channel.send(events.spinning())
        await asyncio.sleep(0.05)
        assert session.state.phase == WAITING
        channel.send(events.spinning())
        return await asyncio.wait_for(runner, 2)

    assert asyncio.run(scenario()).phase == WINNER


def test_live_draw_between_host_and_spectator(db, make):
    host = make.user()
    game = make.game(host, max_tickets=10)
    make.ticket(game, 5, first_name="Jane", last_name="Doe", email="jane@example.com")
    picker = ScriptedPicker([2, 5])
    game_id = game.id

    async def draw_once():
        session = SessionLocal()
        try:
            return execute_draw(session, game_id, host, picker)
        finally:
            session.close()

    async def fetch_latest():
        session = SessionLocal()
        try:
            row = latest_draw(session, game_id)
            return row.to_ledger_dict() if row else None
        finally:
            session.close()

    async def fetch_winner():
        session = SessionLocal()
        try:
            return get_winner(session, game_id)
        finally:
            session.close()

    async def scenario():
        hub = ChannelHub()
        async with hub.subscribe(game_id) as sub:
            spectator = SpectatorSession(
                max_tickets=10,
                channel=sub,
                fetch_latest_draw=fetch_latest,
                fetch_winner=fetch_winner,
                settings=FAST,
                countdown_tick_seconds=0.001,
                status_poll_seconds=0,
            )
            watching = asyncio.ensure_future(spectator.run())
            host_session = HostDrawSession(
                game_id,
                publish=lambda event: hub.publish(game_id, event),
                draw_once=draw_once,
                countdown_ticks=2,
                tick_seconds=0.001,
                redraw_delay=0.05,
            )
            result = await host_session.run()
            final = await asyncio.wait_for(watching, 3)
        return result, final, spectator.history

    result, final, history = asyncio.run(scenario())
    assert result.has_winner
    assert result.winner["player_name"] == "Jane Doe"
    assert final.phase == WINNER
    assert final.winner == {"ticket_number": 5, "player_name": "Jane D."}
    assert history[0] == WAITING
    assert history[-1] == WINNER
    assert REDRAW in history
