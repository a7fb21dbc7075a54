"""
Draw protocol errors.
Each error carries the HTTP status the API answers with; the engine itself never imports FastAPI.
"""


class DrawError(Exception):
    """Base error for the draw protocol. `retryable` marks failures a later attempt may clear."""
    status_code = 500
    code = "draw_error"
    retryable = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        out = {"detail": self.message, "code": self.code}
        if self.details:
            out["details"] = self.details
        return out


class UnauthorizedError(DrawError):
    """Missing or invalid credentials."""
    status_code = 401
    code = "unauthorized"


class ForbiddenError(UnauthorizedError):
    """Authenticated, but neither the game's creator nor an elevated role."""
    status_code = 403
    code = "forbidden"


class NotFoundError(DrawError):
    status_code = 404
    code = "not_found"


class InvalidStateError(DrawError):
    """Game is not in a status that allows the operation (e.g. draw on a non-locked game)."""
    status_code = 400
    code = "invalid_state"


class ConflictError(DrawError):
    """A concurrent draw already advanced the game, or a unique constraint was hit."""
    status_code = 409
    code = "conflict"


class TransientError(DrawError):
    """Database or network failure. Surfaced once; the next scheduled attempt may succeed."""
    status_code = 503
    code = "transient"
    retryable = True


class NoEligibleTicketError(DrawError):
    """The redraw loop hit its attempt cap without drawing a sold, eligible ticket."""
    status_code = 409
    code = "no_eligible_ticket"

    def __init__(self, attempts: int, winning_numbers: list[int] | None = None):
        super().__init__(
            f"No eligible ticket drawn after {attempts} attempts",
            attempts=attempts,
            winning_numbers=list(winning_numbers or []),
        )
        self.attempts = attempts
