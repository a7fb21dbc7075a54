"""
Draw events.
Channel events travel over the per-game broadcast channel from the host to spectators.
Local events are produced inside one spectator session (timers, fetch results, animation completions).
Both are consumed by the spectator reducer.
"""

from dataclasses import dataclass
from typing import Any


@dataclass
class DrawEvent:
    """Base event class. All events have a type and payload."""
    type: str
    payload: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DrawEvent":
        return cls(type=data["type"], payload=dict(data.get("payload") or {}))


# ===== Channel Event Types =====

DRAW_STARTED = "draw_started"
PHASE_CHANGE = "phase_change"

CHANNEL_EVENT_TYPES = (DRAW_STARTED, PHASE_CHANGE)

# phase_change payload phases the host may announce
BROADCAST_PHASES = ("spinning", "redraw")

# ===== Local Event Types =====

COUNTDOWN_FINISHED = "countdown_finished"
DRAW_FETCHED = "draw_fetched"
DIGIT_REVEALED = "digit_revealed"
REDRAW_DELAY_ELAPSED = "redraw_delay_elapsed"
WINNER_FETCHED = "winner_fetched"
GAME_STATUS_CHANGED = "game_status_changed"
WINNER_TIMEOUT = "winner_timeout"


def channel_name(game_id: str) -> str:
    return f"draw-{game_id}"


def validate_channel_event(event: DrawEvent) -> None:
    """Raise ValueError unless event is a well-formed broadcast event."""
    if event.type not in CHANNEL_EVENT_TYPES:
        raise ValueError(
            f"Unknown channel event '{event.type}'. Allowed: {', '.join(CHANNEL_EVENT_TYPES)}"
        )
    if event.type == PHASE_CHANGE and event.payload.get("phase") not in BROADCAST_PHASES:
        raise ValueError(
            f"phase_change needs payload.phase in {', '.join(BROADCAST_PHASES)}"
        )
    attempt = event.payload.get("attempt")
    if attempt is not None and (isinstance(attempt, bool) or not isinstance(attempt, int) or attempt < 1):
        raise ValueError("phase_change payload.attempt must be a positive integer")


# ===== Channel Event Factories =====

def draw_started() -> DrawEvent:
    return DrawEvent(DRAW_STARTED, {})


def phase_change(phase: str, attempt: int | None = None) -> DrawEvent:
    payload: dict[str, Any] = {"phase": phase}
    if attempt is not None:
        payload["attempt"] = attempt
    event = DrawEvent(PHASE_CHANGE, payload)
    validate_channel_event(event)
    return event


def spinning(attempt: int | None = None) -> DrawEvent:
    """attempt names the ledger row the host just committed; the server checks it."""
    return phase_change("spinning", attempt)


def redraw() -> DrawEvent:
    return phase_change("redraw")


# ===== Local Event Factories =====

def countdown_finished() -> DrawEvent:
    return DrawEvent(COUNTDOWN_FINISHED, {})


def draw_fetched(
    attempt: int | None,
    winning_number: int | None,
    has_winner: bool,
) -> DrawEvent:
    """
    Result of reading the latest ledger row. attempt/winning_number are None when the
    game has no Draw row yet (or the fetch failed).
    """
    return DrawEvent(DRAW_FETCHED, {
        "attempt": attempt,
        "winning_number": winning_number,
        "has_winner": has_winner,
    })


def draw_fetched_from_row(row: dict[str, Any] | None) -> DrawEvent:
    """Build draw_fetched from the ledger read shape {attempt, winning_ticket_id, audit_json}."""
    if not row:
        return draw_fetched(None, None, False)
    audit = row.get("audit_json") or {}
    return draw_fetched(
        row.get("attempt"),
        audit.get("winning_number"),
        row.get("winning_ticket_id") is not None,
    )


def digit_revealed(attempt: int, position: int) -> DrawEvent:
    """The reveal animation for one digit position finished."""
    return DrawEvent(DIGIT_REVEALED, {"attempt": attempt, "position": position})


def redraw_delay_elapsed(attempt: int | None) -> DrawEvent:
    return DrawEvent(REDRAW_DELAY_ELAPSED, {"attempt": attempt})


def winner_fetched(winner: dict[str, Any] | None) -> DrawEvent:
    return DrawEvent(WINNER_FETCHED, {"winner": winner})


def game_status_changed(status: str) -> DrawEvent:
    return DrawEvent(GAME_STATUS_CHANGED, {"status": status})


def winner_timeout(attempt: int | None) -> DrawEvent:
    return DrawEvent(WINNER_TIMEOUT, {"attempt": attempt})
