"""
Spectator phase reducer.
Applies draw events to a spectator's state, producing new state.
Returns (new_state, effects) where effects are the I/O the runtime must perform next.

Phases: waiting -> countdown -> spinning -> (redraw -> spinning)* -> winner.
winner (and error, reached only when winner data never arrives) are terminal.
The reducer never looks at the clock: timers and animations come back in as events.
"""

from dataclasses import dataclass
from typing import Any

from backend import config
from backend.engine import WAITING, COUNTDOWN, SPINNING, REDRAW, WINNER, ERROR
from backend.engine.state import SpectatorState
from backend.engine.utils import decompose_digits
from backend.engine.events import (
    DrawEvent,
    DRAW_STARTED,
    PHASE_CHANGE,
    COUNTDOWN_FINISHED,
    DRAW_FETCHED,
    DIGIT_REVEALED,
    REDRAW_DELAY_ELAPSED,
    WINNER_FETCHED,
    GAME_STATUS_CHANGED,
    WINNER_TIMEOUT,
)
from backend.engine.effects import (
    Effect,
    start_countdown,
    fetch_latest_draw,
    reveal_digit,
    fetch_winner,
    schedule_redraw,
    start_winner_timeout,
    cancel_timers,
)


@dataclass(frozen=True)
class PhaseSettings:
    """UX pacing only; correctness never depends on these values."""
    countdown_ticks: int = config.COUNTDOWN_TICKS
    redraw_delay: float = config.REDRAW_DELAY_SECONDS
    winner_timeout: float = config.WINNER_TIMEOUT_SECONDS


Result = tuple[SpectatorState, list[Effect]]

# Game statuses that mean a winner has been recorded
DECIDED_STATUSES = ("drawn", "closed")


def initial_state(max_tickets: int, status: str | None = None) -> Result:
    """
    State for a viewer that just opened the player view.
    A game that is already decided skips the phase protocol and fetches its winner.
    Any other status waits for the host: a locked game may not be drawn for hours.
    """
    state = SpectatorState(max_tickets=max_tickets)
    if status not in DECIDED_STATUSES:
        return state, []
    return apply_event(state, DrawEvent(GAME_STATUS_CHANGED, {"status": status}))


def apply_event(
    state: SpectatorState,
    event: DrawEvent,
    settings: PhaseSettings | None = None,
) -> Result:
    """
    Apply a single event to the current state, returning new state and effects.

    Events that do not fit the current phase (late animation completions, stale fetches,
    timers from an earlier attempt) are ignored rather than rejected: broadcasts reach
    each spectator independently and may arrive in any order relative to local timers.

    Raises:
        ValueError: unknown event type
    """
    settings = settings or PhaseSettings()
    handler = _HANDLERS.get(event.type)
    if handler is None:
        raise ValueError(f"Unknown draw event '{event.type}'")
    if state.is_terminal:
        return state, []
    return handler(state, event.payload, settings)


def _handle_draw_started(state: SpectatorState, payload: dict, settings: PhaseSettings) -> Result:
    if state.phase != WAITING:
        return state, []
    return state.evolve(phase=COUNTDOWN), [start_countdown(settings.countdown_ticks)]


def _handle_countdown_finished(state: SpectatorState, payload: dict, settings: PhaseSettings) -> Result:
    # The host's phase_change:spinning is the single trigger; a local countdown ending early
    # or late must not make this screen diverge from the host.
    return state, []


def _handle_phase_change(state: SpectatorState, payload: dict, settings: PhaseSettings) -> Result:
    phase = payload.get("phase")
    if phase == "spinning":
        # Never start the reveal without the number it has to land on. Always fetch again:
        # a fetch already in flight may have read the ledger before this attempt was committed.
        return _request_draw(state)
    if phase == "redraw":
        if state.phase == REDRAW:
            return state, []
        return _enter_redraw(state, settings)
    return state, []


def _enter_redraw(state: SpectatorState, settings: PhaseSettings) -> Result:
    new_state = state.evolve(
        phase=REDRAW,
        awaiting_draw=False,
        winner=None,
        winner_requested=False,
    )
    return new_state, [cancel_timers(), schedule_redraw(state.attempt, settings.redraw_delay)]


def _handle_redraw_delay_elapsed(state: SpectatorState, payload: dict, settings: PhaseSettings) -> Result:
    if state.phase != REDRAW or payload.get("attempt") != state.attempt:
        return state, []
    if state.awaiting_draw:
        return state, []
    return _request_draw(state)


def _request_draw(state: SpectatorState) -> Result:
    return state.evolve(
        awaiting_draw=True,
        fetches_in_flight=state.fetches_in_flight + 1,
    ), [fetch_latest_draw()]


def _handle_draw_fetched(state: SpectatorState, payload: dict, settings: PhaseSettings) -> Result:
    in_flight = max(0, state.fetches_in_flight - 1)
    if not state.awaiting_draw:
        return state.evolve(fetches_in_flight=in_flight), []
    attempt = payload.get("attempt")
    number = payload.get("winning_number")
    if attempt is None or number is None:
        return state.evolve(awaiting_draw=in_flight > 0, fetches_in_flight=in_flight), []
    if state.attempt is not None and attempt <= state.attempt:
        # The host has not committed the next attempt yet; its phase_change:spinning will follow
        return state.evolve(awaiting_draw=in_flight > 0, fetches_in_flight=in_flight), []
    try:
        digits = decompose_digits(int(number), state.max_tickets)
    except ValueError as exc:
        return state.evolve(
            phase=ERROR, awaiting_draw=False, fetches_in_flight=in_flight, error=str(exc)
        ), [cancel_timers()]

    has_winner = bool(payload.get("has_winner"))
    # A winner already known from a status fallback fetch belongs to this attempt only if it won
    winner = state.winner if has_winner and state.winner else None
    new_state = state.evolve(
        phase=SPINNING,
        attempt=attempt,
        winning_number=int(number),
        has_winner=has_winner,
        digits=digits,
        revealed=[],
        winner=winner,
        awaiting_draw=False,
        fetches_in_flight=in_flight,
        winner_requested=has_winner,
        error=None,
    )
    effects = [cancel_timers(), reveal_digit(attempt, 0, digits[0])]
    if has_winner and winner is None:
        # Fetch in parallel with the reveal; the transition waits for whichever finishes last
        effects.append(fetch_winner())
    return new_state, effects


def _handle_digit_revealed(state: SpectatorState, payload: dict, settings: PhaseSettings) -> Result:
    if state.phase != SPINNING or payload.get("attempt") != state.attempt:
        return state, []
    position = payload.get("position")
    if position != state.next_position or position >= len(state.digits):
        return state, []

    new_state = state.evolve(revealed=state.revealed + [state.digits[position]])
    if not new_state.all_revealed:
        nxt = position + 1
        return new_state, [reveal_digit(state.attempt, nxt, state.digits[nxt])]
    return _resolve_reveal(new_state, settings)


def _resolve_reveal(state: SpectatorState, settings: PhaseSettings) -> Result:
    """All digits are on screen: show the winner, wait for its data, or go to redraw."""
    if not state.has_winner:
        return _enter_redraw(state, settings)
    if state.winner is not None:
        return state.evolve(phase=WINNER), [cancel_timers()]
    effects: list[Effect] = []
    if not state.winner_requested:
        state = state.evolve(winner_requested=True)
        effects.append(fetch_winner())
    effects.append(start_winner_timeout(state.attempt, settings.winner_timeout))
    return state, effects


def _handle_winner_fetched(state: SpectatorState, payload: dict, settings: PhaseSettings) -> Result:
    winner = payload.get("winner")
    if not winner:
        return state.evolve(winner_requested=False), []
    if state.phase == SPINNING:
        if state.all_revealed and state.has_winner:
            return state.evolve(phase=WINNER, winner=winner), [cancel_timers()]
        return state.evolve(winner=winner), []
    # Status fallback: the game is already decided, skip the reveal
    return state.evolve(
        phase=WINNER,
        winner=winner,
        winning_number=_ticket_number(winner, state.winning_number),
        awaiting_draw=False,
    ), [cancel_timers()]


def _ticket_number(winner: dict[str, Any], default: int | None) -> int | None:
    try:
        return int(winner.get("ticket_number"))
    except (TypeError, ValueError):
        return default


def _handle_game_status_changed(state: SpectatorState, payload: dict, settings: PhaseSettings) -> Result:
    status = payload.get("status")
    if status in DECIDED_STATUSES:
        if state.winner is not None or state.winner_requested:
            return state, []
        return state.evolve(winner_requested=True), [fetch_winner()]
    if status == "locked" and state.phase == WAITING:
        return state.evolve(phase=COUNTDOWN), [start_countdown(settings.countdown_ticks)]
    return state, []


def _handle_winner_timeout(state: SpectatorState, payload: dict, settings: PhaseSettings) -> Result:
    if state.phase != SPINNING or payload.get("attempt") != state.attempt or state.winner is not None:
        return state, []
    return state.evolve(
        phase=ERROR,
        error="Winner data did not arrive in time",
    ), [cancel_timers()]


_HANDLERS = {
    DRAW_STARTED: _handle_draw_started,
    COUNTDOWN_FINISHED: _handle_countdown_finished,
    PHASE_CHANGE: _handle_phase_change,
    REDRAW_DELAY_ELAPSED: _handle_redraw_delay_elapsed,
    DRAW_FETCHED: _handle_draw_fetched,
    DIGIT_REVEALED: _handle_digit_revealed,
    WINNER_FETCHED: _handle_winner_fetched,
    GAME_STATUS_CHANGED: _handle_game_status_changed,
    WINNER_TIMEOUT: _handle_winner_timeout,
}


def replay_events(
    initial: SpectatorState,
    events: list[DrawEvent],
    settings: PhaseSettings | None = None,
) -> tuple[SpectatorState, list[Effect]]:
    """
    Replay a series of events from an initial state.

    Returns:
        Tuple of (final_state, all_effects) after all events applied
    """
    current = initial
    all_effects: list[Effect] = []
    for event in events:
        current, effects = apply_event(current, event, settings)
        all_effects.extend(effects)
    return current, all_effects
