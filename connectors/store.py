"""
Credential and authorization-state storage interfaces.

The stores are the only mutable state of the connector core.  Every
method is a single atomic operation; read-modify-write sequences on one
(user, provider) pair are serialized by the caller through ``PairLocks``.

``MemoryCredentialStore`` / ``MemoryStateStore`` keep everything in
process and are used for tests and single-process development; the
SQLAlchemy implementations live in ``connectors.sql_store``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from connectors.models import AuthorizationState, Credential, as_utc


class CredentialStore(ABC):
    """Durable per-(user, provider) credential records."""

    @abstractmethod
    async def get(self, user_id: str, provider_id: str) -> Optional[Credential]:
        ...

    @abstractmethod
    async def list_for_user(self, user_id: str) -> List[Credential]:
        ...

    @abstractmethod
    async def list_expiring(self, before: datetime) -> List[Credential]:
        """Credentials whose access token expires at or before ``before``."""
        ...

    @abstractmethod
    async def save(self, credential: Credential) -> None:
        """Insert or overwrite the record for the credential's pair."""
        ...

    @abstractmethod
    async def delete(self, user_id: str, provider_id: str) -> bool:
        """Remove the record. Returns False if there was none."""
        ...


class StateStore(ABC):
    """Single-use pending authorization records keyed by ``state``."""

    @abstractmethod
    async def put(self, record: AuthorizationState) -> None:
        ...

    @abstractmethod
    async def pop(self, state: str) -> Optional[AuthorizationState]:
        """Fetch and delete in one step, so a state can only be consumed once."""
        ...

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime) -> int:
        ...


class MemoryCredentialStore(CredentialStore):
    def __init__(self) -> None:
        self._rows: Dict[Tuple[str, str], Credential] = {}

    async def get(self, user_id: str, provider_id: str) -> Optional[Credential]:
        row = self._rows.get((user_id, provider_id))
        return row.model_copy(deep=True) if row else None

    async def list_for_user(self, user_id: str) -> List[Credential]:
        return [
            row.model_copy(deep=True)
            for (owner, _provider), row in self._rows.items()
            if owner == user_id
        ]

    async def list_expiring(self, before: datetime) -> List[Credential]:
        return [
            row.model_copy(deep=True)
            for row in self._rows.values()
            if row.access_token_expires_at is not None
            and as_utc(row.access_token_expires_at) <= before
        ]

    async def save(self, credential: Credential) -> None:
        self._rows[(credential.user_id, credential.provider_id)] = credential.model_copy(deep=True)

    async def delete(self, user_id: str, provider_id: str) -> bool:
        return self._rows.pop((user_id, provider_id), None) is not None


class MemoryStateStore(StateStore):
    def __init__(self) -> None:
        self._pending: Dict[str, AuthorizationState] = {}

    async def put(self, record: AuthorizationState) -> None:
        self._pending[record.state] = record

    async def pop(self, state: str) -> Optional[AuthorizationState]:
        return self._pending.pop(state, None)

    async def delete_older_than(self, cutoff: datetime) -> int:
        expired = [key for key, value in self._pending.items() if as_utc(value.created_at) < cutoff]
        for key in expired:
            self._pending.pop(key, None)
        return len(expired)
