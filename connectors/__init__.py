"""
connectors — per-user OAuth connections to third-party providers.

Provides:
  • A validated, read-only provider catalog
  • Authorization-code flow with single-use CSRF state
  • Lazy, single-flight token refresh per (user, provider)
  • Connection status reporting
  • Best-effort revocation on disconnect
  • Fernet encryption of tokens at rest

``ConnectorService`` is the entry point; the HTTP routes live in
``connectors.routes``.
"""
