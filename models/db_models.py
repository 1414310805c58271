"""
SQLAlchemy ORM models for the MySQL database.

Purpose:
- Define the Bus document table (rider entries embedded as a JSON list) and
  the User table that backs the rider directory
- Use SQLAlchemy async-compatible models

Production notes:
- current_riders is the whole aggregate list; every write bumps version so
  whole-list updates can be compare-and-swapped
- rider_count mirrors len(current_riders) so the sweep can find non-empty
  buses with a plain indexed predicate instead of a JSON function
"""

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean
from core.db import Base


def _utcnow():
    return datetime.now(timezone.utc)


class Bus(Base):
    """
    Represents a bus aggregate.

    Columns:
    - bus_id: unique identifier (e.g., "B1")
    - max_capacity: upper bound on simultaneously active riders
    - current_riders: JSON array of rider entries
    - rider_count: number of entries in current_riders
    - version: document version, bumped on every write
    - last_payment_check: last time the expiration sweep wrote this bus
    - created_at/updated_at: audit timestamps
    """
    __tablename__ = "buses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    bus_id = Column(String(50), unique=True, index=True, nullable=False)
    bus_name = Column(String(255), nullable=True)
    bus_label = Column(String(100), nullable=True)
    max_capacity = Column(Integer, nullable=False, default=0)
    current_riders = Column(JSON, nullable=False, default=list)
    rider_count = Column(Integer, nullable=False, default=0, index=True)
    version = Column(Integer, nullable=False, default=0)
    last_payment_check = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class User(Base):
    """
    Represents a user (rider, driver, admin).

    name/email are copied into rider entries at subscribe time only.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(100), unique=True, index=True, nullable=False)
    role = Column(String(50), default="rider", index=True)  # rider, driver, admin
    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True, unique=True, index=True)
    phone = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
