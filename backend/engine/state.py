"""
Spectator state representation.
State is treated as immutable by the reducer; transitions return new copies.
Includes dict serialization so a session can be snapshotted for the UI or logs.
"""

from dataclasses import dataclass, field, replace
from typing import Any

from backend.engine import PHASES, WAITING, TERMINAL_PHASES


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _int_list(value: Any) -> list[int]:
    if not isinstance(value, list):
        return []
    out = []
    for v in value:
        try:
            out.append(int(v))
        except (TypeError, ValueError):
            pass
    return out


@dataclass(frozen=True)
class SpectatorState:
    """What one viewer's screen shows for a single game's draw session."""
    max_tickets: int
    phase: str = WAITING
    # Ledger attempt currently being revealed (or last revealed); fetches at or below it are stale
    attempt: int | None = None
    winning_number: int | None = None
    has_winner: bool = False
    digits: list[int] = field(default_factory=list)
    revealed: list[int] = field(default_factory=list)
    winner: dict[str, Any] | None = None
    # A phase_change:spinning (or redraw dwell) is waiting on a fresh ledger row
    awaiting_draw: bool = False
    fetches_in_flight: int = 0
    winner_requested: bool = False
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def all_revealed(self) -> bool:
        return bool(self.digits) and len(self.revealed) == len(self.digits)

    @property
    def next_position(self) -> int:
        return len(self.revealed)

    def evolve(self, **changes: Any) -> "SpectatorState":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_tickets": self.max_tickets,
            "phase": self.phase,
            "attempt": self.attempt,
            "winning_number": self.winning_number,
            "has_winner": self.has_winner,
            "digits": list(self.digits),
            "revealed": list(self.revealed),
            "winner": self.winner,
            "awaiting_draw": self.awaiting_draw,
            "fetches_in_flight": self.fetches_in_flight,
            "winner_requested": self.winner_requested,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SpectatorState":
        if not isinstance(data, dict):
            data = {}
        winner = data.get("winner")
        return cls(
            max_tickets=_int_or_none(data.get("max_tickets")) or 1,
            phase=data.get("phase") if data.get("phase") in PHASES else WAITING,
            attempt=_int_or_none(data.get("attempt")),
            winning_number=_int_or_none(data.get("winning_number")),
            has_winner=bool(data.get("has_winner")),
            digits=_int_list(data.get("digits")),
            revealed=_int_list(data.get("revealed")),
            winner=dict(winner) if isinstance(winner, dict) else None,
            awaiting_draw=bool(data.get("awaiting_draw")),
            fetches_in_flight=_int_or_none(data.get("fetches_in_flight")) or 0,
            winner_requested=bool(data.get("winner_requested")),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class DrawResult:
    """Outcome of one Selector invocation."""
    winning_number: int
    has_winner: bool
    winner: dict[str, Any] | None = None
    attempt: int | None = None
    draw_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Wire shape of the draw endpoint."""
        return {
            "winningNumber": self.winning_number,
            "hasWinner": self.has_winner,
            "winner": self.winner,
            "attempt": self.attempt,
        }
