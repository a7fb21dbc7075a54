"""
Draw execution against the database: the Selector, the ledger, and winner resolution.

execute_draw is the only place a winning number is picked. Preconditions are checked before
any randomness is drawn. The ledger row and the game's status flip commit in one transaction,
and the flip is a conditional update so at most one draw ever moves a game locked -> drawn.
"""

import json
import logging
import uuid
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from backend import config
from backend.engine.errors import (
    ConflictError,
    DrawError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    TransientError,
    UnauthorizedError,
)
from backend.engine.selector import Picker, Selection, get_picker
from backend.engine.state import DrawResult
from backend.engine.utils import host_winner, public_winner
from .auth import can_host
from .models import AuditLog, Draw, Game, Ticket, User, utcnow

logger = logging.getLogger(__name__)

LOCKED = "locked"
DRAWN = "drawn"


def default_picker() -> Picker:
    return get_picker(config.DRAW_SELECTION)


# ===== Ledger reads =====

def latest_draw(db: Session, game_id: str) -> Draw | None:
    """Most recent Draw row for the game (highest attempt), or None."""
    return (
        db.query(Draw)
        .filter(Draw.game_id == game_id)
        .order_by(Draw.attempt.desc(), Draw.executed_at.desc())
        .first()
    )


def latest_winning_draw(db: Session, game_id: str) -> Draw | None:
    return (
        db.query(Draw)
        .filter(Draw.game_id == game_id, Draw.winning_ticket_id.isnot(None))
        .order_by(Draw.attempt.desc(), Draw.executed_at.desc())
        .first()
    )


def list_draws(db: Session, game_id: str) -> list[Draw]:
    return db.query(Draw).filter(Draw.game_id == game_id).order_by(Draw.attempt.asc()).all()


def get_winner(db: Session, game_id: str, full: bool = False) -> dict[str, Any] | None:
    """
    Winner derived from the latest winner-bearing Draw.
    full=True is the host projection (full name + email); otherwise surname is reduced to an initial.
    """
    draw = latest_winning_draw(db, game_id)
    if draw is None or draw.winning_ticket is None:
        return None
    ticket = draw.winning_ticket
    player = ticket.player
    if full:
        return host_winner(ticket.number, player.first_name, player.last_name, player.email)
    return public_winner(ticket.number, player.first_name, player.last_name)


def _result_from_draw(draw: Draw) -> DrawResult:
    winner = None
    if draw.winning_ticket is not None:
        ticket = draw.winning_ticket
        winner = host_winner(
            ticket.number, ticket.player.first_name, ticket.player.last_name, ticket.player.email
        )
    return DrawResult(
        winning_number=int(draw.audit.get("winning_number")),
        has_winner=winner is not None,
        winner=winner,
        attempt=draw.attempt,
        draw_id=draw.id,
    )


def write_audit(db: Session, game_id: str | None, actor_user_id: str | None, event_type: str, data: dict) -> None:
    db.add(AuditLog(
        id=str(uuid.uuid4()),
        game_id=game_id,
        actor_user_id=actor_user_id,
        event_type=event_type,
        event_data=json.dumps(data, default=str),
    ))


# ===== Selector =====

def execute_draw(
    db: Session,
    game_id: str,
    user: User | None,
    picker: Picker | None = None,
) -> DrawResult:
    """
    Pick a winning number for a locked game and resolve it to a ticket.

    Raises:
        UnauthorizedError: no authenticated user
        NotFoundError: game does not exist
        ForbiddenError: user is neither the creator nor an elevated role
        InvalidStateError: game is not locked
        ConflictError: a concurrent draw advanced the game first
        TransientError: database unavailable; nothing was committed
    """
    if user is None:
        raise UnauthorizedError("Missing or invalid authorization")
    try:
        return _execute_draw(db, game_id, user, picker or default_picker())
    except DrawError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        logger.info("Concurrent draw on game %s hit a unique constraint", game_id, exc_info=exc)
        raise ConflictError("Another draw for this game was recorded at the same time", game_id=game_id)
    except OperationalError as exc:
        db.rollback()
        logger.error("Database failure during draw for game %s: %s", game_id, exc)
        raise TransientError("Database unavailable, try again", game_id=game_id)


def _execute_draw(db: Session, game_id: str, user: User, picker: Picker) -> DrawResult:
    game = db.get(Game, game_id)
    if game is None:
        raise NotFoundError("Game not found", game_id=game_id)
    if not can_host(user, game):
        raise ForbiddenError("Only the game host can execute the draw", game_id=game_id)
    if game.status != LOCKED:
        raise InvalidStateError(
            f"Game must be locked before drawing (status: {game.status})", status=game.status
        )

    recorded = latest_winning_draw(db, game.id)
    if recorded is not None:
        # Winner already in the ledger but the status flip never landed: finish it, never redraw
        _flip_to_drawn(db, game.id)
        write_audit(db, game.id, user.id, "draw_recovered", {"draw_id": recorded.id})
        db.commit()
        logger.warning("Recovered draw %s for game %s; status set to drawn", recorded.id, game.id)
        return _result_from_draw(recorded)

    selection = picker(game.max_tickets)
    number = selection.winning_number
    logger.info("Generated winning number %d for game %s", number, game.id)

    ticket = (
        db.query(Ticket)
        .filter(
            Ticket.game_id == game.id,
            Ticket.number == number,
            Ticket.eligible.is_(True),
        )
        .first()
    )
    attempt = (db.query(func.max(Draw.attempt)).filter(Draw.game_id == game.id).scalar() or 0) + 1
    now = utcnow()
    draw = Draw(
        id=str(uuid.uuid4()),
        game_id=game.id,
        attempt=attempt,
        algorithm=selection.algorithm,
        winning_ticket_id=ticket.id if ticket else None,
        executed_at=now,
        audit_json=json.dumps(_audit_payload(selection, now, attempt)),
    )
    db.add(draw)
    db.flush()

    if ticket is not None:
        _flip_to_drawn(db, game.id)
    else:
        # Misses leave status alone but must still lose to a concurrent winning draw
        _require_still_locked(db, game.id)

    write_audit(db, game.id, user.id, "draw_executed", {
        "attempt": attempt,
        "winning_number": number,
        "has_winner": ticket is not None,
    })
    db.commit()

    if ticket is None:
        logger.info("No ticket found for winning number %d in game %s - redraw needed", number, game.id)
        return DrawResult(winning_number=number, has_winner=False, attempt=attempt, draw_id=draw.id)

    player = ticket.player
    logger.info("Winner found for game %s: ticket #%d", game.id, ticket.number)
    return DrawResult(
        winning_number=number,
        has_winner=True,
        winner=host_winner(ticket.number, player.first_name, player.last_name, player.email),
        attempt=attempt,
        draw_id=draw.id,
    )


def _audit_payload(selection: Selection, now, attempt: int) -> dict[str, Any]:
    return {
        "winning_number": selection.winning_number,
        "timestamp": now.isoformat(),
        "entropy_source_bytes": selection.entropy_hex(),
        "entropy_bits": selection.bits,
        "rejections": max(0, len(selection.raw_values) - 1),
        "attempt": attempt,
    }


def _flip_to_drawn(db: Session, game_id: str) -> None:
    result = db.execute(
        update(Game)
        .where(Game.id == game_id, Game.status == LOCKED)
        .values(status=DRAWN, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError("Game was already drawn by a concurrent request", game_id=game_id)


def _require_still_locked(db: Session, game_id: str) -> None:
    result = db.execute(
        update(Game)
        .where(Game.id == game_id, Game.status == LOCKED)
        .values(updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError("Game left the locked state during the draw", game_id=game_id)


# ===== Recovery =====

def decided_game_ids():
    """Subquery of game ids that have at least one winner-bearing Draw row."""
    return select(Draw.game_id).where(Draw.winning_ticket_id.isnot(None))


def recover_pending_draws(db: Session) -> list[str]:
    """
    Flip every locked game that already has a winner-bearing Draw row to drawn.
    Returns the recovered game ids. Never draws a new number.
    """
    games = (
        db.query(Game)
        .filter(Game.status == LOCKED)
        .filter(Game.id.in_(decided_game_ids()))
        .all()
    )
    recovered = []
    for game in games:
        try:
            _flip_to_drawn(db, game.id)
        except ConflictError:
            db.rollback()
            continue
        write_audit(db, game.id, None, "draw_recovered", {"source": "recover_pending_draws"})
        db.commit()
        recovered.append(game.id)
        logger.warning("Recovered pending draw for game %s", game.id)
    return recovered
