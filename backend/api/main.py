"""
FastAPI backend for the raffle draw host.
REST endpoints for hosts (games, players, tickets, the draw) plus the per-game live channel
spectators subscribe to.
"""

import asyncio
import logging
import secrets
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from backend import config
from backend.engine import GAME_STATUSES
from backend.engine.errors import (
    ConflictError,
    DrawError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
)
from backend.engine.events import DrawEvent, validate_channel_event
from .auth import (
    can_host,
    create_access_token,
    get_current_user,
    get_current_user_optional,
    hash_password,
    validate_username,
    verify_password,
)
from .channels import ChannelHub, Subscription
from .database import SessionLocal, get_db, init_db
from .draws import (
    execute_draw,
    get_winner,
    latest_draw,
    list_draws,
    recover_pending_draws,
    write_audit,
)
from .models import Game, Player, Ticket, User, utcnow

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    db = SessionLocal()
    try:
        recovered = recover_pending_draws(db)
        if recovered:
            logger.warning("Recovered %d games with a recorded winner on startup", len(recovered))
    finally:
        db.close()
    yield


app = FastAPI(
    title="Raffle Draw API",
    description="Backend API for hosting raffles and running live draws",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.hub = ChannelHub()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


@app.middleware("http")
async def log_requests(request, call_next):
    """Log method and path so 500s can be traced to the failing endpoint."""
    method = getattr(request, "method", "?")
    url = getattr(request, "url", None)
    path = url.path if url else "?"
    try:
        response = await call_next(request)
        if response.status_code >= 500:
            logger.error("[%d] %s %s", response.status_code, method, path)
        return response
    except Exception:
        logger.error("[500] %s %s (exception)", method, path)
        raise


@app.exception_handler(DrawError)
async def draw_error_handler(request, exc: DrawError):
    if exc.status_code >= 500:
        logger.warning("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request, exc):
    """Return 500 with CORS headers so the frontend can read the error."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    origin = request.headers.get("origin")
    allow_origin = origin if origin in config.CORS_ORIGINS else config.CORS_ORIGINS[0]
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
        headers={
            "Access-Control-Allow-Origin": allow_origin,
            "Access-Control-Allow-Credentials": "true",
        },
    )


# Linear game lifecycle; locked -> drawn only happens inside execute_draw
STATUS_TRANSITIONS = {
    "draft": "open",
    "open": "locked",
    "drawn": "closed",
}
EDITABLE_STATUSES = ("draft", "open")

GAME_CODE_LENGTH = 6


# ===== Pydantic Models =====

class RegisterRequest(BaseModel):
    email: str
    username: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


class CreateGameRequest(BaseModel):
    name: str
    max_tickets: int
    ticket_price: Decimal = Decimal("0")
    draw_at: datetime | None = None


class StatusRequest(BaseModel):
    status: str


class AddPlayerRequest(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone: str | None = None
    ticket_numbers: list[int] = []


class TicketUpdateRequest(BaseModel):
    eligible: bool


class ExecuteDrawRequest(BaseModel):
    game_id: str


class BroadcastRequest(BaseModel):
    event: str
    payload: dict[str, Any] = {}


# ===== Helper Functions =====

def generate_game_code(db: Session) -> str:
    """Generate a unique 6-digit public game code."""
    for _ in range(20):
        code = f"{secrets.randbelow(10 ** GAME_CODE_LENGTH):0{GAME_CODE_LENGTH}d}"
        if db.query(Game).filter(Game.code == code).first() is None:
            return code
    raise HTTPException(status_code=500, detail="Could not generate unique game code")


def game_to_dict(game: Game) -> dict[str, Any]:
    return {
        "id": game.id,
        "code": game.code,
        "name": game.name,
        "ticket_price": str(game.ticket_price) if game.ticket_price is not None else "0",
        "max_tickets": game.max_tickets,
        "draw_at": game.draw_at.isoformat() if game.draw_at else None,
        "status": game.status,
        "created_by": game.created_by,
    }


def user_to_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "roles": sorted(user.role_names),
    }


def player_to_dict(player: Player) -> dict[str, Any]:
    return {
        "id": player.id,
        "first_name": player.first_name,
        "last_name": player.last_name,
        "email": player.email,
        "phone": player.phone,
        "tickets": sorted(t.number for t in player.tickets),
    }


def _load_game(game_id: str, db: Session) -> Game:
    game = db.get(Game, game_id)
    if game is None:
        raise NotFoundError("Game not found", game_id=game_id)
    return game


def _require_host(game_id: str, user: User, db: Session) -> Game:
    game = _load_game(game_id, db)
    if not can_host(user, game):
        raise ForbiddenError("Only the game host can do that", game_id=game_id)
    return game


def _check_broadcast(game_id: str, user: User, event: DrawEvent) -> None:
    """Runs in a worker thread: ordering rules for what a host may announce."""
    db = SessionLocal()
    try:
        game = _require_host(game_id, user, db)
        if event.type == "draw_started" and game.status != "locked":
            raise InvalidStateError(
                f"Game must be locked to start the draw (status: {game.status})", status=game.status
            )
        if event.payload.get("phase") == "spinning":
            latest = latest_draw(db, game_id)
            if latest is None:
                raise InvalidStateError("No draw has been recorded for this game yet", game_id=game_id)
            # Without an attempt only "some row exists" can be checked
            announced = event.payload.get("attempt")
            if announced is not None and announced != latest.attempt:
                raise InvalidStateError(
                    f"Attempt {announced} is not the latest recorded draw (latest: {latest.attempt})",
                    attempt=announced,
                    latest_attempt=latest.attempt,
                )
    finally:
        db.close()


# ===== API Endpoints =====

@app.get("/")
def root():
    return {"message": "Raffle Draw API", "version": "1.0.0"}


# ----- Auth -----

@app.post("/auth/register")
def register(request: RegisterRequest, db: Session = Depends(get_db)):
    """Register a host account with email, username (letters, numbers, underscore) and password."""
    if not validate_username(request.username):
        raise HTTPException(
            status_code=400,
            detail="Username must be 2-32 characters, letters numbers and underscore only",
        )
    if db.query(User).filter(User.email == request.email).first():
        raise HTTPException(status_code=400, detail="Email already registered")
    if db.query(User).filter(User.username == request.username).first():
        raise HTTPException(status_code=400, detail="Username already taken")
    user = User(
        id=str(uuid.uuid4()),
        email=request.email,
        username=request.username,
        password_hash=hash_password(request.password),
    )
    db.add(user)
    db.commit()
    logger.info("Registered user %s", user.username)
    return {"access_token": create_access_token(user.id), "user": user_to_dict(user)}


@app.post("/auth/login")
def login(request: LoginRequest, db: Session = Depends(get_db)):
    """Login with email and password."""
    user = db.query(User).filter(User.email == request.email).first()
    if not user or not verify_password(request.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return {"access_token": create_access_token(user.id), "user": user_to_dict(user)}


@app.get("/auth/me")
def auth_me(user: User = Depends(get_current_user)):
    return user_to_dict(user)


# ----- Games -----

@app.post("/games")
def create_game(
    request: CreateGameRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create a game in draft. The creator is its host."""
    if request.max_tickets < 1:
        raise HTTPException(status_code=400, detail="max_tickets must be at least 1")
    if request.ticket_price < 0:
        raise HTTPException(status_code=400, detail="ticket_price cannot be negative")
    name = request.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Game name is required")
    game = Game(
        id=str(uuid.uuid4()),
        code=generate_game_code(db),
        name=name,
        ticket_price=request.ticket_price,
        max_tickets=request.max_tickets,
        draw_at=request.draw_at,
        status="draft",
        created_by=user.id,
    )
    db.add(game)
    write_audit(db, game.id, user.id, "game_created", {"name": name, "max_tickets": game.max_tickets})
    db.commit()
    logger.info("Game %s (%s) created by %s", game.id, game.code, user.username)
    return game_to_dict(game)


@app.get("/games/code/{code}")
def get_game_by_code(code: str, db: Session = Depends(get_db)):
    """Public game summary for the player view."""
    game = db.query(Game).filter(Game.code == code).first()
    if game is None:
        raise NotFoundError("Game not found", code=code)
    return game_to_dict(game)


@app.get("/games/{game_id}")
def get_game(game_id: str, db: Session = Depends(get_db)):
    """Public game summary; spectators poll this for status."""
    return game_to_dict(_load_game(game_id, db))


@app.post("/games/{game_id}/status")
def set_game_status(
    game_id: str,
    request: StatusRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Advance the game one step along draft -> open -> locked (-> drawn) -> closed."""
    game = _require_host(game_id, user, db)
    current, target = game.status, request.status
    if target not in GAME_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status {target!r}")
    if target == "drawn":
        raise InvalidStateError("A game becomes drawn only by executing the draw", status=current)
    if STATUS_TRANSITIONS.get(current) != target:
        raise InvalidStateError(f"Cannot move game from {current} to {target}", status=current)
    if target == "locked" and db.query(Ticket).filter(Ticket.game_id == game.id).count() == 0:
        raise InvalidStateError("A game needs at least one ticket before it can be locked")

    result = db.execute(
        update(Game)
        .where(Game.id == game.id, Game.status == current)
        .values(status=target, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise ConflictError("Game status changed concurrently", game_id=game.id)
    write_audit(db, game.id, user.id, "status_changed", {"from": current, "to": target})
    db.commit()
    db.refresh(game)
    logger.info("Game %s status %s -> %s", game.id, current, target)
    return game_to_dict(game)


@app.post("/games/{game_id}/players")
def add_player(
    game_id: str,
    request: AddPlayerRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Register a player and the ticket numbers they bought."""
    game = _require_host(game_id, user, db)
    if game.status not in EDITABLE_STATUSES:
        raise InvalidStateError(
            f"Players can only be added while the game is draft or open (status: {game.status})",
            status=game.status,
        )
    numbers = request.ticket_numbers
    if len(set(numbers)) != len(numbers):
        raise HTTPException(status_code=400, detail="Duplicate ticket numbers in request")
    out_of_range = [n for n in numbers if n < 1 or n > game.max_tickets]
    if out_of_range:
        raise HTTPException(
            status_code=400,
            detail=f"Ticket numbers must be between 1 and {game.max_tickets}: {out_of_range}",
        )
    taken = [
        t.number for t in
        db.query(Ticket).filter(Ticket.game_id == game.id, Ticket.number.in_(numbers)).all()
    ] if numbers else []
    if taken:
        raise ConflictError(f"Ticket numbers already sold: {sorted(taken)}", numbers=sorted(taken))

    player = Player(
        id=str(uuid.uuid4()),
        game_id=game.id,
        first_name=request.first_name.strip(),
        last_name=request.last_name.strip(),
        email=request.email.strip(),
        phone=request.phone,
    )
    db.add(player)
    for number in numbers:
        db.add(Ticket(id=str(uuid.uuid4()), game_id=game.id, number=number, player_id=player.id))
    write_audit(db, game.id, user.id, "player_added", {"player_id": player.id, "tickets": numbers})
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Ticket numbers were sold concurrently", numbers=numbers)
    db.refresh(player)
    return player_to_dict(player)


@app.patch("/games/{game_id}/tickets/{number}")
def update_ticket(
    game_id: str,
    number: int,
    request: TicketUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Mark a ticket eligible or ineligible (e.g. unpaid). Ineligible tickets never win."""
    game = _require_host(game_id, user, db)
    if game.status in ("drawn", "closed"):
        raise InvalidStateError("Tickets cannot change after the draw", status=game.status)
    ticket = db.query(Ticket).filter(Ticket.game_id == game.id, Ticket.number == number).first()
    if ticket is None:
        raise NotFoundError(f"Ticket #{number} not found", number=number)
    ticket.eligible = request.eligible
    write_audit(db, game.id, user.id, "ticket_eligibility", {"number": number, "eligible": request.eligible})
    db.commit()
    return {"number": ticket.number, "eligible": ticket.eligible, "player_id": ticket.player_id}


# ----- Draw -----

@app.post("/draws/execute")
def do_execute_draw(
    request: ExecuteDrawRequest,
    user: User | None = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
):
    """Run one draw attempt. Winner: game becomes drawn. No ticket sold: host redraws."""
    result = execute_draw(db, request.game_id, user)
    return result.to_dict()


@app.get("/games/{game_id}/draws/latest")
def get_latest_draw(game_id: str, db: Session = Depends(get_db)):
    """Latest ledger row {attempt, winning_ticket_id, audit_json}, or null before the first draw."""
    _load_game(game_id, db)
    draw = latest_draw(db, game_id)
    if draw is None:
        return None
    row = draw.to_ledger_dict()
    return {
        "attempt": row["attempt"],
        "winning_ticket_id": row["winning_ticket_id"],
        "audit_json": row["audit_json"],
    }


@app.get("/games/{game_id}/draws")
def get_draw_ledger(
    game_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Full draw history for the host, oldest attempt first."""
    _require_host(game_id, user, db)
    return {"draws": [d.to_ledger_dict() for d in list_draws(db, game_id)]}


@app.get("/games/{game_id}/winner")
def get_game_winner(
    game_id: str,
    user: User | None = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
):
    """Winner projection, null until drawn. The host sees full name and email."""
    game = _load_game(game_id, db)
    return get_winner(db, game.id, full=can_host(user, game))


# ----- Live channel -----

@app.post("/games/{game_id}/broadcast")
async def broadcast(
    game_id: str,
    request: BroadcastRequest,
    user: User = Depends(get_current_user),
):
    """Publish draw_started or phase_change to everyone watching the game."""
    event = DrawEvent(type=request.event, payload=dict(request.payload))
    try:
        validate_channel_event(event)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    await run_in_threadpool(_check_broadcast, game_id, user, event)
    hub: ChannelHub = app.state.hub
    delivered = hub.publish(game_id, event)
    return {"event": event.to_dict(), "listeners": delivered}


async def _forward(websocket: WebSocket, sub: Subscription) -> None:
    async for event in sub:
        await websocket.send_json(event.to_dict())


async def _drain(websocket: WebSocket) -> None:
    # Spectators do not send; reading only detects the disconnect
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@app.websocket("/games/{game_id}/channel")
async def draw_channel(websocket: WebSocket, game_id: str):
    """Subscribe to draw-{game_id}. First message acknowledges the subscription."""
    hub: ChannelHub = websocket.app.state.hub
    await websocket.accept()
    async with hub.subscribe(game_id) as sub:
        await websocket.send_json({"type": "subscribed", "channel": sub.channel})
        forward = asyncio.ensure_future(_forward(websocket, sub))
        drain = asyncio.ensure_future(_drain(websocket))
        done, pending = await asyncio.wait({forward, drain}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if forward in done and forward.exception() is not None:
            logger.info("Channel %s closed: %s", sub.channel, forward.exception())


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
