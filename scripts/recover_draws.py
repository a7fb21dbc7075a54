#!/usr/bin/env python3
"""
Finish draws that recorded a winner but never moved their game to drawn (e.g. the process died
between the ledger write and the status update). Never draws a new number.
Usage: python scripts/recover_draws.py [--dry-run]
From repo root with PYTHONPATH=. or from backend: python -m scripts.recover_draws
"""
import sys
import os

# Allow running from repo root or backend
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from backend.api.database import SessionLocal, get_db_file_path, init_db
from backend.api.draws import decided_game_ids, latest_winning_draw, recover_pending_draws
from backend.api.models import Game


def main() -> None:
    dry_run = "--dry-run" in sys.argv[1:]
    db_path = get_db_file_path()
    if db_path:
        print(f"Database: {db_path}")
    init_db()

    db = SessionLocal()
    try:
        if dry_run:
            pending = (
                db.query(Game)
                .filter(Game.status == "locked")
                .filter(Game.id.in_(decided_game_ids()))
                .all()
            )
            for game in pending:
                draw = latest_winning_draw(db, game.id)
                print(f"Would recover {game.name!r} ({game.code}): attempt {draw.attempt}")
            print(f"{len(pending)} game(s) pending.")
            return
        recovered = recover_pending_draws(db)
        for game_id in recovered:
            game = db.get(Game, game_id)
            print(f"Recovered {game.name!r} ({game.code}) -> drawn")
        print(f"{len(recovered)} game(s) recovered.")
    except Exception as e:
        db.rollback()
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
