"""Simple token-based auth helpers for the docflow API."""

from typing import Dict, Optional

from fastapi import Header, HTTPException, status

from docflow.settings import get_settings

# Minimal token -> user mapping for local deployments.
_API_TOKENS: Dict[str, Dict[str, str]] = {
    "dev-user-token": {"user_id": "dev-user", "role": "user"},
    "dev-admin-token": {"user_id": "admin", "role": "admin"},
}


def _token_table() -> Dict[str, Dict[str, str]]:
    tokens = dict(_API_TOKENS)
    configured = get_settings().api.key
    if configured and configured not in tokens:
        tokens[configured] = {"user_id": "api-user", "role": "user"}
    return tokens


def resolve_user(token: Optional[str]) -> Optional[Dict[str, str]]:
    """Return the user mapped to ``token`` or ``None``."""

    if not token:
        return None
    return _token_table().get(token)


def require_token(x_api_key: Optional[str] = Header(None)) -> Dict[str, str]:
    """Validate the API key header and return user info.

    Args:
        x_api_key: Value of the `X-API-KEY` header.

    Returns:
        dict: user info with 'user_id' and 'role'.

    Raises:
        HTTPException: 401 if missing, 403 if unknown.
    """
    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-API-KEY")
    user = resolve_user(x_api_key)
    if not user:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key")
    return user


def require_admin(x_api_key: Optional[str] = Header(None)) -> Dict[str, str]:
    user = require_token(x_api_key)
    if user.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
    return user
