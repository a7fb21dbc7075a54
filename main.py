"""
Main entry point for the raffle draw engine.
Demonstrates a complete live draw in one process: a locked game with a few sold tickets,
the host's draw session, and one spectator following along over the channel hub.
"""

import asyncio
import logging
import uuid

from backend.api.channels import ChannelHub
from backend.api.database import SessionLocal, init_db
from backend.api.draws import execute_draw, get_winner, latest_draw
from backend.api.models import Game, Player, Ticket, User
from backend.api.auth import hash_password
from backend.engine.reducer import PhaseSettings
from backend.engine.redraw import HostDrawSession
from backend.engine.spectator import SpectatorSession
from backend.engine.state import SpectatorState

logger = logging.getLogger("demo")

MAX_TICKETS = 20
SOLD = {
    3: ("Frodo", "Baggins"),
    8: ("Samwise", "Gamgee"),
    15: ("Rosie", "Cotton"),
}


def create_demo_game(db) -> tuple[User, Game]:
    """A locked game with a handful of sold tickets, so most draws miss and redraw."""
    suffix = uuid.uuid4().hex[:8]
    host = User(
        id=str(uuid.uuid4()),
        email=f"demo-{suffix}@example.com",
        username=f"demo_{suffix}",
        password_hash=hash_password(suffix),
    )
    game = Game(
        id=str(uuid.uuid4()),
        code=f"{uuid.uuid4().int % 10 ** 6:06d}",
        name="Demo hamper",
        ticket_price=5,
        max_tickets=MAX_TICKETS,
        status="locked",
        created_by=host.id,
    )
    db.add_all([host, game])
    for number, (first, last) in SOLD.items():
        player = Player(
            id=str(uuid.uuid4()),
            game_id=game.id,
            first_name=first,
            last_name=last,
            email=f"{first.lower()}@example.com",
        )
        db.add(player)
        db.add(Ticket(id=str(uuid.uuid4()), game_id=game.id, number=number, player_id=player.id))
    db.commit()
    return host, game


def print_state(state: SpectatorState) -> None:
    shown = "".join(str(d) for d in state.revealed) or "-"
    print(f"  [spectator] {state.phase:<9} attempt={state.attempt} digits={shown}")


async def run_demo() -> None:
    init_db()
    db = SessionLocal()
    host, game = create_demo_game(db)
    game_id = game.id
    print(f"Game {game.code}: {MAX_TICKETS} tickets, sold {sorted(SOLD)}")

    async def draw_once():
        return execute_draw(db, game_id, host)

    async def fetch_latest():
        row = latest_draw(db, game_id)
        return row.to_ledger_dict() if row else None

    async def fetch_winner():
        return get_winner(db, game_id)

    async def reveal_digit(attempt: int, position: int, digit: int) -> None:
        await asyncio.sleep(0.05)

    hub = ChannelHub()
    try:
        async with hub.subscribe(game_id) as sub:
            spectator = SpectatorSession(
                max_tickets=MAX_TICKETS,
                channel=sub,
                fetch_latest_draw=fetch_latest,
                fetch_winner=fetch_winner,
                reveal_digit=reveal_digit,
                settings=PhaseSettings(countdown_ticks=3, redraw_delay=0.3, winner_timeout=5.0),
                countdown_tick_seconds=0.1,
                status_poll_seconds=0,
                on_change=print_state,
            )
            watching = asyncio.ensure_future(spectator.run())

            session = HostDrawSession(
                game_id,
                publish=lambda event: hub.publish(game_id, event),
                draw_once=draw_once,
                countdown_ticks=3,
                tick_seconds=0.1,
                redraw_delay=0.3,
                on_tick=lambda n: print(f"  [host] {n}..."),
            )
            result = await session.run()
            final = await asyncio.wait_for(watching, 10)
    finally:
        db.close()

    print("=" * 60)
    print(f"Winning ticket #{result.winning_number} after {session.controller.attempts} attempts")
    print(f"Host sees:      {result.winner}")
    print(f"Spectator sees: {final.winner}")
    print(f"Spectator phases: {' -> '.join(spectator.history)}")


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    print("Raffle Draw - live draw demo")
    print("=" * 60)
    asyncio.run(run_demo())


if __name__ == "__main__":
    main()
