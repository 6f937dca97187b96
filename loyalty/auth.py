import base64
import binascii
import json
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from .config import Settings, get_settings

PRINCIPAL_HEADER = "x-ms-client-principal"


def decode_principal(header_value: str) -> Optional[dict]:
    try:
        principal = json.loads(base64.b64decode(header_value, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    return principal if isinstance(principal, dict) else None


def resolve_user_id(header_value: Optional[str], settings: Settings) -> Optional[str]:
    """User id from the client-principal header, or the dev user when no header was sent."""
    if not header_value:
        return settings.dev_user_id or None

    principal = decode_principal(header_value)
    if principal is None:
        return None
    user_id = principal.get("userId")
    return user_id if isinstance(user_id, str) and user_id.strip() else None


def require_user(
    x_ms_client_principal: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> str:
    user_id = resolve_user_id(x_ms_client_principal, settings)
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="UNAUTHENTICATED")
    return user_id
