"""
Draw execution against the database: preconditions, the ledger, the status flip,
concurrent draws and recovery.
"""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from backend.api.database import SessionLocal
from backend.api.draws import (
    execute_draw,
    get_winner,
    latest_draw,
    list_draws,
    recover_pending_draws,
)
from backend.api.models import AuditLog, Draw, Game
from backend.engine.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    TransientError,
    UnauthorizedError,
)
from backend.engine.selector import ALGORITHM_REJECTION, ScriptedPicker, Selection


def _status(db, game_id: str) -> str:
    db.expire_all()
    return db.get(Game, game_id).status


class TestPreconditions:

    def test_requires_authenticated_user(self, db, make):
        host = make.user()
        game = make.game(host)
        picker = ScriptedPicker([1])
        with pytest.raises(UnauthorizedError) as exc:
            execute_draw(db, game.id, None, picker)
        assert exc.value.status_code == 401
        assert picker.calls == 0

    def test_unknown_game(self, db, make):
        host = make.user()
        with pytest.raises(NotFoundError):
            execute_draw(db, "missing", host, ScriptedPicker([1]))

    def test_only_host_may_draw(self, db, make):
        host = make.user()
        stranger = make.user("stranger")
        game = make.game(host)
        picker = ScriptedPicker([1])
        with pytest.raises(ForbiddenError) as exc:
            execute_draw(db, game.id, stranger, picker)
        assert exc.value.status_code == 403
        assert picker.calls == 0

    @pytest.mark.parametrize("role", ["admin", "host"])
    def test_elevated_role_may_draw_any_game(self, db, make, role):
        host = make.user()
        staff = make.user("staff", roles=(role,))
        game = make.game(host, max_tickets=3)
        make.ticket(game, 2)
        result = execute_draw(db, game.id, staff, ScriptedPicker([2]))
        assert result.has_winner

    @pytest.mark.parametrize("status", ["draft", "open", "drawn", "closed"])
    def test_game_must_be_locked(self, db, make, status):
        host = make.user()
        game = make.game(host, status=status)
        make.ticket(game, 1)
        picker = ScriptedPicker([1])
        with pytest.raises(InvalidStateError) as exc:
            execute_draw(db, game.id, host, picker)
        assert exc.value.status_code == 400
        assert picker.calls == 0
        assert list_draws(db, game.id) == []


class TestLedger:

    def test_miss_then_winner(self, db, make):
        host = make.user()
        game = make.game(host, max_tickets=10)
        make.ticket(game, 5, first_name="Jane", last_name="Doe", email="jane@example.com")
        picker = ScriptedPicker([2, 5])

        first = execute_draw(db, game.id, host, picker)
        assert not first.has_winner
        assert first.winning_number == 2
        assert first.winner is None
        assert first.attempt == 1
        assert _status(db, game.id) == "locked"

        second = execute_draw(db, game.id, host, picker)
        assert second.has_winner
        assert second.winning_number == 5
        assert second.attempt == 2
        assert second.winner == {
            "ticket_number": 5,
            "player_name": "Jane Doe",
            "player_email": "jane@example.com",
        }
        assert _status(db, game.id) == "drawn"

        rows = list_draws(db, game.id)
        assert [r.attempt for r in rows] == [1, 2]
        assert rows[0].winning_ticket_id is None
        assert rows[1].winning_ticket_id is not None
        assert rows[0].audit["winning_number"] == 2
        assert rows[1].audit["winning_number"] == 5
        assert latest_draw(db, game.id).attempt == 2

    def test_drawn_game_cannot_be_drawn_again(self, db, make):
        host = make.user()
        game = make.game(host, max_tickets=3)
        make.ticket(game, 1)
        execute_draw(db, game.id, host, ScriptedPicker([1]))
        picker = ScriptedPicker([1])
        with pytest.raises(InvalidStateError):
            execute_draw(db, game.id, host, picker)
        assert picker.calls == 0
        assert len(list_draws(db, game.id)) == 1

    def test_ineligible_ticket_never_wins(self, db, make):
        host = make.user()
        game = make.game(host, max_tickets=3)
        make.ticket(game, 3, eligible=False)
        result = execute_draw(db, game.id, host, ScriptedPicker([3]))
        assert not result.has_winner
        assert _status(db, game.id) == "locked"
        assert latest_draw(db, game.id).winning_ticket_id is None

    def test_default_picker_records_audit_trail(self, db, make):
        host = make.user()
        game = make.game(host, max_tickets=1)
        make.ticket(game, 1)
        result = execute_draw(db, game.id, host)
        assert result.has_winner
        row = latest_draw(db, game.id)
        assert row.algorithm == ALGORITHM_REJECTION
        audit = row.audit
        assert audit["winning_number"] == 1
        assert "timestamp" in audit
        assert "entropy_source_bytes" in audit

    def test_draw_attempts_are_audited(self, db, make):
        host = make.user()
        game = make.game(host, max_tickets=10)
        make.ticket(game, 5)
        execute_draw(db, game.id, host, ScriptedPicker([2]))
        logs = db.query(AuditLog).filter(AuditLog.game_id == game.id).all()
        assert [log.event_type for log in logs] == ["draw_executed"]
        assert logs[0].data["winning_number"] == 2
        assert logs[0].data["has_winner"] is False

    def test_winner_projections(self, db, make):
        host = make.user()
        game = make.game(host, max_tickets=5)
        make.ticket(game, 4, first_name="Jane", last_name="Doe", email="jane@example.com")
        assert get_winner(db, game.id) is None
        execute_draw(db, game.id, host, ScriptedPicker([4]))
        assert get_winner(db, game.id) == {"ticket_number": 4, "player_name": "Jane D."}
        assert get_winner(db, game.id, full=True)["player_email"] == "jane@example.com"


class RacingPicker:
    """Runs a complete draw in another session before returning its own pick."""

    def __init__(self, game_id, user, number):
        self.game_id = game_id
        self.user = user
        self.number = number
        self.inner = None

    def __call__(self, max_tickets):
        other = SessionLocal()
        try:
            self.inner = execute_draw(other, self.game_id, self.user, ScriptedPicker([self.number]))
        finally:
            other.close()
        return Selection(winning_number=self.number, algorithm="scripted", raw_values=[self.number - 1])


class TestConcurrency:

    def test_concurrent_winning_draws_yield_one_winner(self, db, make):
        host = make.user()
        game = make.game(host, max_tickets=10)
        make.ticket(game, 5)
        picker = RacingPicker(game.id, host, 5)

        with pytest.raises(ConflictError) as exc:
            execute_draw(db, game.id, host, picker)
        assert exc.value.status_code == 409
        assert picker.inner.has_winner

        rows = list_draws(db, game.id)
        assert len(rows) == 1
        assert _status(db, game.id) == "drawn"

    def test_miss_loses_to_concurrent_winner(self, db, make):
        host = make.user()
        game = make.game(host, max_tickets=10)
        make.ticket(game, 5)

        class MissAfterRace(RacingPicker):
            def __call__(self, max_tickets):
                super().__call__(max_tickets)
                return Selection(winning_number=7, algorithm="scripted", raw_values=[6])

        with pytest.raises(ConflictError):
            execute_draw(db, game.id, host, MissAfterRace(game.id, host, 5))
        assert [r.attempt for r in list_draws(db, game.id)] == [1]


class TestFailures:

    def test_database_failure_is_transient(self, db, make):
        host = make.user()
        game = make.game(host)
        make.ticket(game, 1)

        def broken(max_tickets):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        with pytest.raises(TransientError) as exc:
            execute_draw(db, game.id, host, broken)
        assert exc.value.status_code == 503
        assert exc.value.retryable
        assert list_draws(db, game.id) == []
        assert _status(db, game.id) == "locked"

    def test_unique_constraint_race_is_conflict(self, db, make):
        host = make.user()
        game = make.game(host)

        def duplicate(max_tickets):
            raise IntegrityError("INSERT INTO draws", {}, Exception("UNIQUE constraint failed"))

        with pytest.raises(ConflictError):
            execute_draw(db, game.id, host, duplicate)


def _orphan_winner_row(db, game, ticket, attempt=1):
    """A winner recorded in the ledger whose status flip never committed."""
    db.add(Draw(
        id=f"draw-{game.id}-{attempt}",
        game_id=game.id,
        attempt=attempt,
        algorithm=ALGORITHM_REJECTION,
        winning_ticket_id=ticket.id,
        audit_json=f'{{"winning_number": {ticket.number}}}',
    ))
    db.commit()


class TestRecovery:

    def test_execute_draw_returns_recorded_winner(self, db, make):
        host = make.user()
        game = make.game(host, max_tickets=10)
        ticket = make.ticket(game, 6, first_name="Sam", last_name="Gamgee", email="sam@example.com")
        _orphan_winner_row(db, game, ticket)

        picker = ScriptedPicker([])
        result = execute_draw(db, game.id, host, picker)
        assert picker.calls == 0
        assert result.has_winner
        assert result.winning_number == 6
        assert result.winner["player_name"] == "Sam Gamgee"
        assert _status(db, game.id) == "drawn"
        assert len(list_draws(db, game.id)) == 1

    def test_recover_pending_draws(self, db, make):
        host = make.user()
        stuck = make.game(host, max_tickets=10)
        ticket = make.ticket(stuck, 3)
        _orphan_winner_row(db, stuck, ticket)
        untouched = make.game(host, max_tickets=10)
        make.ticket(untouched, 3)

        assert recover_pending_draws(db) == [stuck.id]
        assert _status(db, stuck.id) == "drawn"
        assert _status(db, untouched.id) == "locked"
        assert recover_pending_draws(db) == []
