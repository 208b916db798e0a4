"""
auth — caller identity for the connector API.

Provides:
  • Signed bearer token creation & verification
  • ``get_current_user_id`` FastAPI dependency
"""
