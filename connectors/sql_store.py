"""
SQLAlchemy-backed credential and state stores.

Token columns are encrypted with ``TokenCipher`` on write and decrypted
on read; nothing outside this module sees ciphertext.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import TokenCipher
from connectors.models import AuthorizationState, Credential, RefreshError, as_utc
from connectors.store import CredentialStore, StateStore
from database.models import ConnectorCredential, OAuthStateRecord

logger = logging.getLogger(__name__)


class SqlCredentialStore(CredentialStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], cipher: TokenCipher) -> None:
        self._session_factory = session_factory
        self._cipher = cipher

    def _to_domain(self, row: ConnectorCredential) -> Credential:
        return Credential(
            user_id=row.user_id,
            provider_id=row.provider,
            access_token=self._cipher.decrypt(row.access_token),
            refresh_token=self._cipher.decrypt_optional(row.refresh_token),
            access_token_expires_at=as_utc(row.expires_at),
            token_type=row.token_type or "Bearer",
            granted_scope=row.granted_scope or "",
            last_refresh_error=RefreshError(row.last_refresh_error) if row.last_refresh_error else None,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            last_refreshed_at=as_utc(row.last_refreshed),
        )

    async def get(self, user_id: str, provider_id: str) -> Optional[Credential]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConnectorCredential).where(
                    ConnectorCredential.user_id == user_id,
                    ConnectorCredential.provider == provider_id,
                )
            )
            row = result.scalar_one_or_none()
            return self._to_domain(row) if row else None

    async def list_for_user(self, user_id: str) -> List[Credential]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConnectorCredential).where(ConnectorCredential.user_id == user_id)
            )
            return [self._to_domain(row) for row in result.scalars().all()]

    async def list_expiring(self, before: datetime) -> List[Credential]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConnectorCredential).where(
                    ConnectorCredential.expires_at.is_not(None),
                    ConnectorCredential.expires_at <= before,
                )
            )
            return [self._to_domain(row) for row in result.scalars().all()]

    async def save(self, credential: Credential) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(ConnectorCredential).where(
                        ConnectorCredential.user_id == credential.user_id,
                        ConnectorCredential.provider == credential.provider_id,
                    )
                )
                row = result.scalar_one_or_none()
                if row is None:
                    row = ConnectorCredential(
                        user_id=credential.user_id,
                        provider=credential.provider_id,
                        created_at=credential.created_at,
                    )
                    session.add(row)
                    logger.debug("Inserting %s credential for user %s", credential.provider_id, credential.user_id)

                # Full overwrite: a missing refresh token clears the column.
                row.access_token = self._cipher.encrypt(credential.access_token)
                row.refresh_token = self._cipher.encrypt_optional(credential.refresh_token)
                row.token_type = credential.token_type
                row.expires_at = credential.access_token_expires_at
                row.granted_scope = credential.granted_scope
                row.last_refresh_error = (
                    credential.last_refresh_error.value if credential.last_refresh_error else None
                )
                row.updated_at = credential.updated_at
                row.last_refreshed = credential.last_refreshed_at

    async def delete(self, user_id: str, provider_id: str) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(ConnectorCredential).where(
                        ConnectorCredential.user_id == user_id,
                        ConnectorCredential.provider == provider_id,
                    )
                )
                return result.rowcount > 0


class SqlStateStore(StateStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def put(self, record: AuthorizationState) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    OAuthStateRecord(
                        state=record.state,
                        user_id=record.user_id,
                        provider=record.provider_id,
                        return_url=record.return_url,
                        created_at=record.created_at,
                    )
                )

    async def pop(self, state: str) -> Optional[AuthorizationState]:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(OAuthStateRecord).where(OAuthStateRecord.state == state)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    return None
                record = AuthorizationState(
                    state=row.state,
                    user_id=row.user_id,
                    provider_id=row.provider,
                    return_url=row.return_url,
                    created_at=as_utc(row.created_at),
                )
                deleted = await session.execute(
                    delete(OAuthStateRecord).where(OAuthStateRecord.state == state)
                )
                # A concurrent consumer won the race.
                if deleted.rowcount == 0:
                    return None
                return record

    async def delete_older_than(self, cutoff: datetime) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(OAuthStateRecord).where(OAuthStateRecord.created_at < cutoff)
                )
                return result.rowcount or 0
