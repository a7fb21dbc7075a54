"""
Redraw controller and host draw session.

RedrawController repeats the Selector until it lands on a sold, eligible ticket. Every attempt
is an independent draw over the full [1, max_tickets] range; earlier misses are never excluded.

HostDrawSession is the host's side of a live draw: announce the start, count down, then run the
controller, publishing phase changes so every spectator screen follows the same sequence.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from backend import config
from backend.engine import events
from backend.engine.errors import DrawError, NoEligibleTicketError
from backend.engine.events import DrawEvent
from backend.engine.state import DrawResult

logger = logging.getLogger(__name__)

DrawOnce = Callable[[], Awaitable[DrawResult]]
ResultHook = Callable[[DrawResult], Awaitable[None]]
ErrorHook = Callable[[DrawError, int], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class RedrawController:
    """
    Call draw_once until it returns a winner.

    max_attempts=None keeps drawing forever, which never terminates if no eligible ticket
    exists; set a cap to get NoEligibleTicketError instead.
    Retryable errors (TransientError) count as an attempt and are retried after the dwell;
    any other DrawError ends the loop immediately.
    """

    def __init__(
        self,
        draw_once: DrawOnce,
        delay: float = config.REDRAW_DELAY_SECONDS,
        max_attempts: int | None = config.MAX_REDRAW_ATTEMPTS,
        sleep: Sleep = asyncio.sleep,
        on_result: ResultHook | None = None,
        on_miss: ResultHook | None = None,
        on_error: ErrorHook | None = None,
    ):
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be at least 1 (or None for no cap)")
        self.draw_once = draw_once
        self.delay = delay
        self.max_attempts = max_attempts
        self.sleep = sleep
        self.on_result = on_result
        self.on_miss = on_miss
        self.on_error = on_error
        self.attempts = 0
        self.misses: list[DrawResult] = []

    async def run(self) -> DrawResult:
        while True:
            if self.max_attempts is not None and self.attempts >= self.max_attempts:
                raise NoEligibleTicketError(
                    self.attempts, [m.winning_number for m in self.misses]
                )
            self.attempts += 1
            try:
                result = await self.draw_once()
            except DrawError as exc:
                if not exc.retryable:
                    raise
                logger.warning("Draw attempt %d failed: %s", self.attempts, exc.message)
                if self.on_error is not None:
                    await self.on_error(exc, self.attempts)
                if self.max_attempts is not None and self.attempts >= self.max_attempts:
                    raise
                await self.sleep(self.delay)
                continue

            if self.on_result is not None:
                await self.on_result(result)
            if result.has_winner:
                logger.info(
                    "Winner on attempt %d: ticket #%d", self.attempts, result.winning_number
                )
                return result

            logger.info(
                "No ticket sold for #%d (attempt %d), redrawing in %.1fs",
                result.winning_number, self.attempts, self.delay,
            )
            self.misses.append(result)
            if self.on_miss is not None:
                await self.on_miss(result)
            await self.sleep(self.delay)


Publish = Callable[[DrawEvent], Awaitable[None] | None]
Reveal = Callable[[DrawResult], Awaitable[None]]


class HostDrawSession:
    """
    Host-side orchestration of one live draw for a game.

    Sequence per attempt: draw (ledger row committed) -> publish phase_change:spinning ->
    host's own reveal -> on a miss publish phase_change:redraw, dwell, repeat.
    spinning is only published after draw_once has returned, so a spectator fetching the
    latest ledger row on receipt always finds the attempt it is about to reveal.
    """

    def __init__(
        self,
        game_id: str,
        publish: Publish,
        draw_once: DrawOnce,
        reveal: Reveal | None = None,
        countdown_ticks: int = config.COUNTDOWN_TICKS,
        tick_seconds: float = config.COUNTDOWN_TICK_SECONDS,
        redraw_delay: float = config.REDRAW_DELAY_SECONDS,
        max_attempts: int | None = config.MAX_REDRAW_ATTEMPTS,
        sleep: Sleep = asyncio.sleep,
        on_tick: Callable[[int], None] | None = None,
    ):
        self.game_id = game_id
        self._publish = publish
        self.reveal = reveal
        self.countdown_ticks = countdown_ticks
        self.tick_seconds = tick_seconds
        self.sleep = sleep
        self.on_tick = on_tick
        self.controller = RedrawController(
            draw_once,
            delay=redraw_delay,
            max_attempts=max_attempts,
            sleep=sleep,
            on_result=self._on_result,
            on_miss=self._on_miss,
        )

    async def publish(self, event: DrawEvent) -> None:
        outcome = self._publish(event)
        if asyncio.iscoroutine(outcome) or isinstance(outcome, asyncio.Future):
            await outcome

    async def countdown(self) -> None:
        for remaining in range(self.countdown_ticks, 0, -1):
            if self.on_tick is not None:
                self.on_tick(remaining)
            await self.sleep(self.tick_seconds)

    async def run(self) -> DrawResult:
        logger.info("Draw session started for game %s", self.game_id)
        await self.publish(events.draw_started())
        await self.countdown()
        return await self.controller.run()

    async def _on_result(self, result: DrawResult) -> None:
        await self.publish(events.spinning(result.attempt))
        if self.reveal is not None:
            await self.reveal(result)

    async def _on_miss(self, result: DrawResult) -> None:
        await self.publish(events.redraw())
