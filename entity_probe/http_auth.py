from __future__ import annotations


BEARER_SCHEME = "Bearer"
AUTHORIZATION_HEADER = "Authorization"
TARGET_URL_HEADER = "X-Target-Url"
CLIENT_ID_HEADER = "X-Client-Id"


def bearer_header(token: str | None) -> str | None:
    value = (token or "").strip()
    if not value:
        return None
    return f"{BEARER_SCHEME} {value}"


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None

    value = authorization.strip()
    if not value:
        return None

    parts = value.split(" ", 1)
    if len(parts) != 2:
        return None

    scheme, token = parts[0].strip().lower(), parts[1].strip()
    if scheme != BEARER_SCHEME.lower() or not token:
        return None
    return token
