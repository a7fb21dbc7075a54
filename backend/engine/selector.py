"""
Winning number selection.
Both pickers read from a cryptographically secure source; neither uses the `random` module.

modulo:    one 32-bit value r, number = (r mod max_tickets) + 1.
           Bias is at most max_tickets / 2**32 - an approximation of uniformity, fine for
           realistic ticket pools but not exact for very large ones.
rejection: k = bit_length(max_tickets - 1) bits per try, accepted when below max_tickets.
           Exactly uniform; expected tries < 2.
"""

import secrets
from dataclasses import dataclass, field
from typing import Callable, Protocol


ALGORITHM_MODULO = "secrets.randbits/modulo"
ALGORITHM_REJECTION = "secrets.randbits/rejection"

MODULO_BITS = 32


class EntropySource(Protocol):
    def randbits(self, k: int) -> int: ...


class SecureEntropySource:
    """OS CSPRNG via the `secrets` module."""

    def randbits(self, k: int) -> int:
        if k <= 0:
            return 0
        return secrets.randbits(k)


@dataclass(frozen=True)
class Selection:
    """A picked number plus the raw entropy consumed to pick it (kept for the audit trail)."""
    winning_number: int
    algorithm: str
    raw_values: list[int] = field(default_factory=list)
    bits: int = 0

    def entropy_hex(self) -> str:
        width = max(1, (self.bits + 3) // 4)
        return ",".join(format(v, f"0{width}x") for v in self.raw_values)


Picker = Callable[[int], Selection]


def _check_max(max_tickets: int) -> None:
    if not isinstance(max_tickets, int) or max_tickets < 1:
        raise ValueError(f"max_tickets must be a positive integer, got {max_tickets!r}")


def modulo_pick(max_tickets: int, source: EntropySource | None = None) -> Selection:
    _check_max(max_tickets)
    source = source or SecureEntropySource()
    r = source.randbits(MODULO_BITS)
    return Selection(
        winning_number=(r % max_tickets) + 1,
        algorithm=ALGORITHM_MODULO,
        raw_values=[r],
        bits=MODULO_BITS,
    )


def rejection_pick(max_tickets: int, source: EntropySource | None = None) -> Selection:
    _check_max(max_tickets)
    source = source or SecureEntropySource()
    bits = (max_tickets - 1).bit_length()
    raw: list[int] = []
    while True:
        r = source.randbits(bits)
        raw.append(r)
        if r < max_tickets:
            return Selection(
                winning_number=r + 1,
                algorithm=ALGORITHM_REJECTION,
                raw_values=raw,
                bits=bits,
            )


PICKERS = {
    "modulo": modulo_pick,
    "rejection": rejection_pick,
}


def get_picker(name: str, source: EntropySource | None = None) -> Picker:
    """Resolve a picker by config name ("modulo" | "rejection")."""
    try:
        pick = PICKERS[name]
    except KeyError:
        raise ValueError(f"Unknown draw selection method {name!r}; expected one of {sorted(PICKERS)}")
    return lambda max_tickets: pick(max_tickets, source)


class ScriptedPicker:
    """Replays a fixed sequence of winning numbers. For rehearsals and tests, never for live draws."""

    def __init__(self, numbers: list[int]):
        self._numbers = list(numbers)
        self.calls = 0

    def __call__(self, max_tickets: int) -> Selection:
        _check_max(max_tickets)
        if self.calls >= len(self._numbers):
            raise RuntimeError("ScriptedPicker ran out of numbers")
        number = self._numbers[self.calls]
        self.calls += 1
        if not 1 <= number <= max_tickets:
            raise ValueError(f"Scripted number {number} outside [1, {max_tickets}]")
        return Selection(winning_number=number, algorithm="scripted", raw_values=[number - 1], bits=0)
