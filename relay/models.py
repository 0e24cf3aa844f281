"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic wire and response schemas, see schemas.py.
"""

from sqlalchemy import Column, Integer, String, Text

from relay.storage import Base


class Message(Base):
    """
    Append-only chat message log.

    Table: messages
    Primary Key: id (AUTOINCREMENT, never reused)
    Unique: idempotency_token (deduplicates client retries)
    """
    __tablename__ = "messages"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_token = Column(String, nullable=False, unique=True)
    content = Column(Text, nullable=False)
