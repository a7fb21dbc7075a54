"""Pytest configuration and shared fixtures.

Every test run gets its own SQLite file; tables are dropped and recreated per test.
"""

import os
import tempfile
import uuid
from itertools import count

# Must be set before backend.api.database is imported
_DB_DIR = tempfile.mkdtemp(prefix="raffle-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest

from backend.api.auth import create_access_token, hash_password
from backend.api.database import Base, SessionLocal, engine, init_db
from backend.api.models import Game, Player, Ticket, User, UserRole


class Factory:
    """Creates committed rows for tests."""

    def __init__(self, db):
        self.db = db
        self._codes = count(100000)

    def user(self, username: str = "host", roles: tuple[str, ...] = ()) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=f"{username}@example.com",
            username=username,
            password_hash=hash_password("secret-pass"),
        )
        for role in roles:
            user.roles.append(UserRole(id=str(uuid.uuid4()), role=role))
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    def game(self, host: User, max_tickets: int = 10, status: str = "locked", name: str = "Hamper") -> Game:
        game = Game(
            id=str(uuid.uuid4()),
            code=f"{next(self._codes):06d}",
            name=name,
            ticket_price=5,
            max_tickets=max_tickets,
            status=status,
            created_by=host.id,
        )
        self.db.add(game)
        self.db.commit()
        self.db.refresh(game)
        return game

    def ticket(
        self,
        game: Game,
        number: int,
        first_name: str = "Jane",
        last_name: str = "Doe",
        email: str = "jane@example.com",
        eligible: bool = True,
    ) -> Ticket:
        player = Player(
            id=str(uuid.uuid4()),
            game_id=game.id,
            first_name=first_name,
            last_name=last_name,
            email=email,
        )
        ticket = Ticket(
            id=str(uuid.uuid4()),
            game_id=game.id,
            number=number,
            player_id=player.id,
            eligible=eligible,
        )
        self.db.add(player)
        self.db.add(ticket)
        self.db.commit()
        return ticket

    @staticmethod
    def headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture
def db():
    init_db()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make(db) -> Factory:
    return Factory(db)


@pytest.fixture
def client(db):
    from fastapi.testclient import TestClient
    from backend.api.main import app

    with TestClient(app) as test_client:
        yield test_client
