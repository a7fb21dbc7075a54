"""
Spectator session runtime.
Feeds channel broadcasts and local completions into the phase reducer and performs the
effects it asks for. One session per viewer; all timers belong to the session and are
cleared on redraw and on teardown.
"""

import asyncio
import logging
from typing import Any, AsyncIterable, Awaitable, Callable

from backend import config
from backend.engine import effects as fx
from backend.engine import events
from backend.engine.effects import Effect
from backend.engine.events import DrawEvent, CHANNEL_EVENT_TYPES, validate_channel_event
from backend.engine.reducer import DECIDED_STATUSES, PhaseSettings, apply_event, initial_state
from backend.engine.state import SpectatorState

logger = logging.getLogger(__name__)

FetchLatestDraw = Callable[[], Awaitable[dict[str, Any] | None]]
FetchWinner = Callable[[], Awaitable[dict[str, Any] | None]]
FetchStatus = Callable[[], Awaitable[str | None]]
RevealDigit = Callable[[int, int, int], Awaitable[None]]


async def _instant_reveal(attempt: int, position: int, digit: int) -> None:
    await asyncio.sleep(0)


class SpectatorSession:
    """
    Drive one viewer's phase machine until it reaches winner (or error).

    Collaborators:
        channel: async iterable of broadcast DrawEvents (e.g. a channels.Subscription)
        fetch_latest_draw: latest ledger row {attempt, winning_ticket_id, audit_json} or None
        fetch_winner: public winner projection or None
        reveal_digit: runs one digit's animation to completion
        fetch_game_status: optional; polled as the fallback for missed broadcasts
    """

    def __init__(
        self,
        max_tickets: int,
        channel: AsyncIterable[DrawEvent] | None,
        fetch_latest_draw: FetchLatestDraw,
        fetch_winner: FetchWinner,
        reveal_digit: RevealDigit | None = None,
        fetch_game_status: FetchStatus | None = None,
        initial_status: str | None = None,
        settings: PhaseSettings | None = None,
        countdown_tick_seconds: float = config.COUNTDOWN_TICK_SECONDS,
        status_poll_seconds: float = config.STATUS_POLL_SECONDS,
        on_change: Callable[[SpectatorState], None] | None = None,
    ):
        self.max_tickets = max_tickets
        self.channel = channel
        self.fetch_latest_draw = fetch_latest_draw
        self.fetch_winner = fetch_winner
        self.reveal_digit = reveal_digit or _instant_reveal
        self.fetch_game_status = fetch_game_status
        self.initial_status = initial_status
        self.settings = settings or PhaseSettings()
        self.countdown_tick_seconds = countdown_tick_seconds
        self.status_poll_seconds = status_poll_seconds
        self.on_change = on_change

        self.state = SpectatorState(max_tickets=max_tickets)
        self.history: list[str] = [self.state.phase]
        self._inbox: asyncio.Queue[DrawEvent] | None = None
        self._timers: set[asyncio.Task] = set()
        self._tasks: set[asyncio.Task] = set()

    async def __aenter__(self) -> "SpectatorSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def run(self) -> SpectatorState:
        """Run until the phase is terminal; always tears down timers and listeners."""
        self._inbox = asyncio.Queue()
        try:
            self.state, effects = initial_state(self.max_tickets, self.initial_status)
            self._record()
            self._execute(effects)
            if self.channel is not None:
                self._spawn(self._pump_channel())
            if self.fetch_game_status is not None and self.status_poll_seconds > 0:
                self._spawn(self._poll_status())
            while not self.state.is_terminal:
                event = await self._inbox.get()
                self.dispatch(event)
            return self.state
        finally:
            await self.close()

    def dispatch(self, event: DrawEvent) -> SpectatorState:
        previous = self.state
        self.state, effects = apply_event(self.state, event, self.settings)
        if self.state is not previous:
            self._record()
        self._execute(effects)
        return self.state

    def _record(self) -> None:
        if self.state.phase != self.history[-1]:
            logger.debug("Spectator phase %s -> %s", self.history[-1], self.state.phase)
            self.history.append(self.state.phase)
        if self.on_change is not None:
            self.on_change(self.state)

    async def close(self) -> None:
        pending = list(self._timers) + list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._timers.clear()
        self._tasks.clear()

    # ===== Effects =====

    def _execute(self, effects: list[Effect]) -> None:
        for effect in effects:
            p = effect.payload
            if effect.type == fx.CANCEL_TIMERS:
                self.cancel_timers()
            elif effect.type == fx.START_COUNTDOWN:
                self._spawn_timer(self._countdown(p["ticks"]))
            elif effect.type == fx.FETCH_LATEST_DRAW:
                self._spawn(self._fetch_draw())
            elif effect.type == fx.FETCH_WINNER:
                self._spawn(self._fetch_winner())
            elif effect.type == fx.REVEAL_DIGIT:
                self._spawn_timer(self._reveal(p["attempt"], p["position"], p["digit"]))
            elif effect.type == fx.SCHEDULE_REDRAW:
                self._spawn_timer(
                    self._after(p["delay"], events.redraw_delay_elapsed(p["attempt"]))
                )
            elif effect.type == fx.START_WINNER_TIMEOUT:
                self._spawn_timer(
                    self._after(p["seconds"], events.winner_timeout(p["attempt"]))
                )
            else:
                raise ValueError(f"Unknown effect '{effect.type}'")

    def cancel_timers(self) -> None:
        for task in list(self._timers):
            task.cancel()
        self._timers.clear()

    def _spawn_timer(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)
        return task

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _post(self, event: DrawEvent) -> None:
        if self._inbox is not None:
            self._inbox.put_nowait(event)

    async def _after(self, seconds: float, event: DrawEvent) -> None:
        await asyncio.sleep(seconds)
        self._post(event)

    async def _countdown(self, ticks: int) -> None:
        await asyncio.sleep(ticks * self.countdown_tick_seconds)
        self._post(events.countdown_finished())

    async def _reveal(self, attempt: int, position: int, digit: int) -> None:
        await self.reveal_digit(attempt, position, digit)
        self._post(events.digit_revealed(attempt, position))

    async def _fetch_draw(self) -> None:
        try:
            row = await self.fetch_latest_draw()
        except Exception:
            logger.exception("Fetching latest draw failed")
            row = None
        self._post(events.draw_fetched_from_row(row))

    async def _fetch_winner(self) -> None:
        try:
            winner = await self.fetch_winner()
        except Exception:
            logger.exception("Fetching winner failed")
            winner = None
        self._post(events.winner_fetched(winner))

    # ===== Listeners =====

    async def _pump_channel(self) -> None:
        async for event in self.channel:
            if event.type not in CHANNEL_EVENT_TYPES:
                logger.warning("Ignoring unknown channel event %s", event.type)
                continue
            try:
                validate_channel_event(event)
            except ValueError as exc:
                logger.warning("Ignoring malformed channel event: %s", exc)
                continue
            self._post(event)

    async def _poll_status(self) -> None:
        """
        Fallback for missed broadcasts. A status is posted when it changes from one seen
        earlier, and a decided status is posted on every poll until the winner is known,
        so a failed winner fetch is retried.
        """
        last = self.initial_status
        while True:
            await asyncio.sleep(self.status_poll_seconds)
            try:
                status = await self.fetch_game_status()
            except Exception:
                logger.exception("Polling game status failed")
                continue
            if not status:
                continue
            changed = last is not None and status != last
            last = status
            if changed or (status in DECIDED_STATUSES and self.state.winner is None):
                self._post(events.game_status_changed(status))
