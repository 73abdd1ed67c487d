"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from enum import Enum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text

from seatline.storage import Base
from seatline.utils import utcnow


class SeatStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageType(str, Enum):
    CHAT = "chat"
    BINDING = "binding"
    SYSTEM = "system"


class Show(Base):
    """
    A production whose cast members hold seats.

    Table: shows
    """
    __tablename__ = "shows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)


class Profile(Base):
    """
    Performer profile collected during onboarding. Read-only in this service.

    Table: profiles
    """
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=True)
    role = Column(String(200), nullable=True)
    show_name = Column(String(200), nullable=True)
    tour_or_resident = Column(String(20), nullable=True)  # "touring" | "resident"
    goals = Column(JSON, nullable=True)  # list or free text
    sleep_env = Column(JSON, nullable=True)  # {"noise": ..., "light": ...} or free text
    food_constraints = Column(JSON, nullable=True)  # {"allergies": [...], "dietary": [...]}
    injuries_notes = Column(Text, nullable=True)


class Seat(Base):
    """
    One access slot for a show, bound to at most one phone.

    Table: seats
    Unique: seat_code (stored upper case)
    """
    __tablename__ = "seats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    show_id = Column(Integer, ForeignKey("shows.id"), nullable=True, index=True)
    seat_code = Column(String(64), nullable=False, unique=True, index=True)
    bound_phone = Column(String(20), nullable=True, index=True)  # E.164
    status = Column(String(16), nullable=False, default=SeatStatus.PENDING.value, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    bound_at = Column(DateTime(timezone=True), nullable=True)
    profile_id = Column(Integer, ForeignKey("profiles.id"), nullable=True)
    wa_id = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class MessageLog(Base):
    """
    Append-only audit row for every inbound and outbound message.

    Table: message_log
    """
    __tablename__ = "message_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    seat_id = Column(Integer, ForeignKey("seats.id"), nullable=True, index=True)
    phone = Column(String(20), nullable=False, index=True)
    direction = Column(String(10), nullable=False)
    body = Column(Text, nullable=True)
    message_type = Column(String(10), nullable=False, default=MessageType.CHAT.value)
    template_key = Column(String(64), nullable=True)
    provider_message_id = Column(String(64), nullable=True, index=True)
    status = Column(String(20), nullable=True)  # provider delivery status
    error_code = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
