"""
ProviderCatalog — the immutable table of OAuth provider definitions.

Built once at startup from configuration and passed explicitly to every
component that needs it.  Malformed entries raise ``CatalogConfigError``,
which aborts startup.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from connectors.errors import CatalogConfigError, ProviderNotFound

logger = logging.getLogger(__name__)


def _require_absolute_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"must be an absolute http(s) URL, got {value!r}")
    return value


class ProviderDefinition(BaseModel):
    """Static OAuth2 client configuration for one provider."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    provider_id: str = Field(..., min_length=1)
    display_name: str = Field(..., validation_alias=AliasChoices("display_name", "displayName"))
    client_id: str = Field(..., validation_alias=AliasChoices("client_id", "clientId"))
    client_secret: SecretStr = Field(..., validation_alias=AliasChoices("client_secret", "clientSecret"))
    authorization_endpoint: str = Field(
        ..., validation_alias=AliasChoices("authorization_endpoint", "auth_url", "authUrl")
    )
    token_endpoint: str = Field(..., validation_alias=AliasChoices("token_endpoint", "token_url", "tokenUrl"))
    revocation_endpoint: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("revocation_endpoint", "revoke_url", "revokeUrl")
    )
    scope: str = Field(default="", validation_alias=AliasChoices("scope", "scopes"))
    services: Tuple[str, ...] = ()
    extra_authorize_params: Dict[str, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("extra_authorize_params", "extraAuthorizeParams"),
    )

    @field_validator("client_id")
    @classmethod
    def _client_id_present(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("client_id must not be empty")
        return value

    @field_validator("client_secret")
    @classmethod
    def _client_secret_present(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("client_secret must not be empty")
        return value

    @field_validator("authorization_endpoint", "token_endpoint")
    @classmethod
    def _endpoint_is_absolute(cls, value: str) -> str:
        return _require_absolute_url(value)

    @field_validator("revocation_endpoint")
    @classmethod
    def _revocation_is_absolute(cls, value: Optional[str]) -> Optional[str]:
        return _require_absolute_url(value) if value else None


class ProviderCatalog:
    """
    Read-only lookup of provider definitions, in configuration order.

    Lookups ignore case; the configured spelling of an id is canonical.
    """

    def __init__(self, definitions: Iterable[ProviderDefinition]) -> None:
        table: Dict[str, ProviderDefinition] = {}
        for definition in definitions:
            key = definition.provider_id.casefold()
            if key in table:
                raise CatalogConfigError(f"Duplicate provider id '{definition.provider_id}'")
            table[key] = definition
        self._providers = MappingProxyType(table)

    @classmethod
    def from_mapping(cls, providers: Dict[str, Dict[str, Any]]) -> "ProviderCatalog":
        """Build from ``{provider_id: {field: value}}`` raw configuration."""
        definitions: List[ProviderDefinition] = []
        for provider_id, raw in providers.items():
            if not isinstance(raw, Mapping):
                raise CatalogConfigError(f"Configuration for provider '{provider_id}' must be a mapping")
            fields = dict(raw)
            repeated = fields.pop("provider_id", provider_id)
            if repeated != provider_id:
                raise CatalogConfigError(
                    f"Provider '{provider_id}' repeats a different provider_id '{repeated}'"
                )
            try:
                definitions.append(ProviderDefinition(provider_id=provider_id, **fields))
            except ValidationError as exc:
                raise CatalogConfigError(
                    f"Invalid configuration for provider '{provider_id}': {exc}"
                ) from exc
        return cls(definitions)

    def get(self, provider_id: str) -> ProviderDefinition:
        try:
            return self._providers[provider_id.casefold()]
        except KeyError:
            raise ProviderNotFound(
                f"Provider '{provider_id}' is not configured", provider=provider_id
            ) from None

    def list(self) -> List[ProviderDefinition]:
        return list(self._providers.values())

    def __contains__(self, provider_id: object) -> bool:
        return isinstance(provider_id, str) and provider_id.casefold() in self._providers

    def __iter__(self) -> Iterator[ProviderDefinition]:
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)


def load_catalog(settings) -> ProviderCatalog:
    """
    Build the catalog from ``settings``.

    Entries come from the JSON file at ``connectors_config_path`` (if any),
    then ``connector_providers`` overrides / extends them by provider id.
    """
    providers: Dict[str, Dict[str, Any]] = {}

    if settings.connectors_config_path:
        path = Path(settings.connectors_config_path)
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise CatalogConfigError(f"Cannot read connector config {path}: {exc}") from exc
        file_providers = document.get("providers", {}) if isinstance(document, dict) else None
        if not isinstance(file_providers, dict):
            raise CatalogConfigError(f"{path}: 'providers' must be an object")
        providers.update(file_providers)

    providers.update(settings.connector_providers or {})

    catalog = ProviderCatalog.from_mapping(providers)
    if not len(catalog):
        logger.warning("No OAuth connector providers configured")
    for definition in catalog:
        logger.info(
            "Connector registered: %s (%s)",
            definition.display_name,
            definition.provider_id,
        )
    return catalog
