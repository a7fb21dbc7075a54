"""
Effect definitions for the spectator phase machine.
Effects are immutable instructions the reducer hands back to its runtime: fetch something,
start an animation, arm or clear a timer. The reducer itself never performs I/O.
"""

from dataclasses import dataclass


@dataclass
class Effect:
    """Base effect class. All effects have a type and payload."""
    type: str  # e.g. "fetch_latest_draw", "reveal_digit", "schedule_redraw"
    payload: dict


START_COUNTDOWN = "start_countdown"
FETCH_LATEST_DRAW = "fetch_latest_draw"
REVEAL_DIGIT = "reveal_digit"
FETCH_WINNER = "fetch_winner"
SCHEDULE_REDRAW = "schedule_redraw"
START_WINNER_TIMEOUT = "start_winner_timeout"
CANCEL_TIMERS = "cancel_timers"


def start_countdown(ticks: int) -> Effect:
    """Show the countdown. Purely presentational for spectators; it does not advance the machine."""
    return Effect(type=START_COUNTDOWN, payload={"ticks": ticks})


def fetch_latest_draw() -> Effect:
    """Read the most recent Draw ledger row for the game; answer with draw_fetched."""
    return Effect(type=FETCH_LATEST_DRAW, payload={})


def reveal_digit(attempt: int, position: int, digit: int) -> Effect:
    """
    Run one digit's reveal animation to completion, then answer with digit_revealed(attempt, position).
    Example: reveal_digit(3, 0, 0) spins the first wheel of attempt 3 onto 0.
    """
    return Effect(
        type=REVEAL_DIGIT,
        payload={"attempt": attempt, "position": position, "digit": digit},
    )


def fetch_winner() -> Effect:
    """Read the public winner projection; answer with winner_fetched."""
    return Effect(type=FETCH_WINNER, payload={})


def schedule_redraw(attempt: int | None, delay: float) -> Effect:
    """Hold the "no ticket sold" screen for `delay` seconds, then answer with redraw_delay_elapsed."""
    return Effect(type=SCHEDULE_REDRAW, payload={"attempt": attempt, "delay": delay})


def start_winner_timeout(attempt: int | None, seconds: float) -> Effect:
    return Effect(type=START_WINNER_TIMEOUT, payload={"attempt": attempt, "seconds": seconds})


def cancel_timers() -> Effect:
    """Clear every pending timer and in-flight reveal so nothing stale lands in the next phase."""
    return Effect(type=CANCEL_TIMERS, payload={})
