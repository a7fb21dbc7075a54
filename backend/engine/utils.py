"""
Utility functions for the draw engine: digit decomposition and winner projections.
"""

from typing import Any


def digit_width(max_tickets: int, winning_number: int | None = None) -> int:
    """
    Number of digit positions the reveal animates.

    Width of the largest ticket number below max_tickets, so a 1000-ticket game reveals
    three digits. A winning number that is itself wider (only max_tickets when it is a
    power of ten) widens the reveal to fit.
    """
    if max_tickets < 1:
        raise ValueError(f"max_tickets must be positive, got {max_tickets}")
    width = len(str(max(max_tickets - 1, 1)))
    if winning_number is not None:
        width = max(width, len(str(winning_number)))
    return width


def decompose_digits(winning_number: int, max_tickets: int) -> list[int]:
    """
    Left-to-right decimal digits of winning_number, zero padded to digit_width.
    decompose_digits(7, 1000) == [0, 0, 7]
    """
    if not 1 <= winning_number <= max_tickets:
        raise ValueError(f"winning number {winning_number} outside [1, {max_tickets}]")
    width = digit_width(max_tickets, winning_number)
    return [int(c) for c in str(winning_number).zfill(width)]


def full_name(first_name: str | None, last_name: str | None) -> str:
    return " ".join(p for p in ((first_name or "").strip(), (last_name or "").strip()) if p)


def public_name(first_name: str | None, last_name: str | None) -> str:
    """Surname reduced to its initial: "Jane Doe" -> "Jane D."."""
    first = (first_name or "").strip()
    last = (last_name or "").strip()
    if not last:
        return first
    return f"{first} {last[0].upper()}.".strip()


def host_winner(ticket_number: int, first_name: str, last_name: str, email: str) -> dict[str, Any]:
    """Winner projection for the game's host: full name and contact."""
    return {
        "ticket_number": ticket_number,
        "player_name": full_name(first_name, last_name),
        "player_email": email,
    }


def public_winner(ticket_number: int, first_name: str, last_name: str) -> dict[str, Any]:
    """Winner projection safe for the player view (no email, surname redacted)."""
    return {
        "ticket_number": ticket_number,
        "player_name": public_name(first_name, last_name),
    }
