"""
SQLAlchemy models for hosts, games, players, tickets and the draw ledger.
"""

import json
from datetime import datetime, timezone
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _loads(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {}
    return value if isinstance(value, dict) else {}


class User(Base):
    """A host account."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)  # uuid
    email = Column(String(255), unique=True, nullable=False, index=True)
    username = Column(String(64), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    roles = relationship("UserRole", cascade="all, delete-orphan", lazy="selectin")

    @property
    def role_names(self) -> set[str]:
        return {r.role for r in self.roles}


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_role"),)

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(16), nullable=False)  # admin | host
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Game(Base):
    __tablename__ = "games"

    id = Column(String(36), primary_key=True)  # uuid
    code = Column(String(6), unique=True, nullable=False, index=True)  # 6-digit public code for the player view
    name = Column(String(128), nullable=False)
    ticket_price = Column(Numeric(12, 2), nullable=False, default=0)
    max_tickets = Column(Integer, nullable=False)
    draw_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(16), nullable=False, default="draft")  # draft | open | locked | drawn | closed
    created_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Player(Base):
    __tablename__ = "players"

    id = Column(String(36), primary_key=True)
    game_id = Column(String(36), ForeignKey("games.id", ondelete="CASCADE"), nullable=False, index=True)
    first_name = Column(String(128), nullable=False)
    last_name = Column(String(128), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    tickets = relationship("Ticket", back_populates="player")


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (UniqueConstraint("game_id", "number", name="uq_ticket_game_number"),)

    id = Column(String(36), primary_key=True)
    game_id = Column(String(36), ForeignKey("games.id", ondelete="CASCADE"), nullable=False, index=True)
    number = Column(Integer, nullable=False)  # 1..max_tickets
    player_id = Column(String(36), ForeignKey("players.id", ondelete="CASCADE"), nullable=False)
    eligible = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    player = relationship("Player", back_populates="tickets", lazy="joined")


class Draw(Base):
    """
    One draw attempt. Append-only: rows are inserted, never updated or deleted.
    winning_ticket_id is null for a "no ticket sold" attempt.
    """
    __tablename__ = "draws"
    __table_args__ = (UniqueConstraint("game_id", "attempt", name="uq_draw_game_attempt"),)

    id = Column(String(36), primary_key=True)
    game_id = Column(String(36), ForeignKey("games.id", ondelete="CASCADE"), nullable=False, index=True)
    attempt = Column(Integer, nullable=False)  # 1..n per game
    algorithm = Column(String(64), nullable=False)
    winning_ticket_id = Column(String(36), ForeignKey("tickets.id"), nullable=True)
    executed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    audit_json = Column(Text, nullable=False)  # {"winning_number", "timestamp", "entropy_source_bytes", ...}

    winning_ticket = relationship("Ticket", lazy="joined")

    @property
    def audit(self) -> dict:
        return _loads(self.audit_json)

    def to_ledger_dict(self) -> dict:
        return {
            "id": self.id,
            "attempt": self.attempt,
            "algorithm": self.algorithm,
            "winning_ticket_id": self.winning_ticket_id,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "audit_json": self.audit,
        }


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True)
    game_id = Column(String(36), ForeignKey("games.id", ondelete="CASCADE"), nullable=True, index=True)
    actor_user_id = Column(String(36), nullable=True)
    event_type = Column(String(64), nullable=False)
    event_data = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime(timezone=True), default=utcnow)

    @property
    def data(self) -> dict:
        return _loads(self.event_data)
