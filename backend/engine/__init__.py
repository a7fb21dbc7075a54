"""
Raffle draw engine.
Winning number selection, the redraw loop, and the phase machine the live draw screens follow.
No web framework or database imports here.
"""

# Spectator-visible phases of one draw session
WAITING = "waiting"
COUNTDOWN = "countdown"
SPINNING = "spinning"
REDRAW = "redraw"
WINNER = "winner"
ERROR = "error"

PHASES = (WAITING, COUNTDOWN, SPINNING, REDRAW, WINNER, ERROR)
TERMINAL_PHASES = (WINNER, ERROR)

# Game lifecycle; linear, drawn only via the draw protocol
GAME_STATUSES = ("draft", "open", "locked", "drawn", "closed")
