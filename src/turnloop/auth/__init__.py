"""Session authentication package."""

from turnloop.auth.dependencies import require_auth
from turnloop.auth.service import create_session, delete_session, validate_token

__all__ = ["create_session", "validate_token", "delete_session", "require_auth"]
