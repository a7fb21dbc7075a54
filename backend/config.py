"""
Single place for draw protocol configuration.
Values come from the environment; defaults match the live draw screens (5 x 1s countdown, 2s redraw dwell).
A malformed value stops startup rather than falling back to its default.
"""

import os


def _env_number(name: str, default, cast):
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int | None) -> int | None:
    return _env_number(name, default, int)


def _env_float(name: str, default: float) -> float:
    return _env_number(name, default, float)


# "rejection" (exactly uniform) or "modulo" (one 32-bit value, small bias for huge ticket pools)
DRAW_SELECTION = os.environ.get("DRAW_SELECTION", "rejection").strip().lower()

REDRAW_DELAY_SECONDS = _env_float("REDRAW_DELAY_SECONDS", 2.0)
COUNTDOWN_TICKS = _env_int("COUNTDOWN_TICKS", 5)
COUNTDOWN_TICK_SECONDS = _env_float("COUNTDOWN_TICK_SECONDS", 1.0)

# Unset or 0 = no cap (the redraw loop runs until a sold ticket is drawn)
MAX_REDRAW_ATTEMPTS = _env_int("MAX_REDRAW_ATTEMPTS", None) or None

# Spectators give up waiting for winner data after this many seconds past the last digit
WINNER_TIMEOUT_SECONDS = _env_float("WINNER_TIMEOUT_SECONDS", 15.0)

# How often a spectator polls Game.status as a fallback for missed broadcasts (0 = off)
STATUS_POLL_SECONDS = _env_float("STATUS_POLL_SECONDS", 5.0)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

CORS_ORIGINS = [
    o.strip()
    for o in os.environ.get(
        "CORS_ORIGINS", "http://localhost:5173,http://localhost:5174,http://localhost:3000"
    ).split(",")
    if o.strip()
]
