"""
SQLAlchemy ORM models for connector credentials and pending OAuth states.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class ConnectorCredential(Base):
    __tablename__ = "connector_credentials"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_connector_credentials_user_provider"),
    )

    credential_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(64), nullable=False)
    access_token = Column(Text, nullable=False)          # encrypted
    refresh_token = Column(Text)                         # encrypted
    token_type = Column(String(32), default="Bearer")
    expires_at = Column(DateTime(timezone=True))
    granted_scope = Column(Text, nullable=False, default="")
    last_refresh_error = Column(String(32))
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    last_refreshed = Column(DateTime(timezone=True))


class OAuthStateRecord(Base):
    __tablename__ = "connector_oauth_states"

    state = Column(String(128), primary_key=True)
    user_id = Column(String(64), nullable=False)
    provider = Column(String(64), nullable=False)
    return_url = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


Index("ix_connector_oauth_states_created_at", OAuthStateRecord.created_at)
