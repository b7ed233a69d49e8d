"""Context tokens -- HS256 JWTs that carry an opaque context claim.

Tokens are issued per bridge process and have no expiry: a bridge stays
authenticated for its whole lifetime.  Verification fails closed; a bad
signature, a malformed token, or a payload without ``context`` all raise
:class:`~hostrpc.errors.AuthenticationError`.
"""

from __future__ import annotations

import secrets
from typing import Any

import jwt

from hostrpc.errors import AuthenticationError

ALGORITHM = "HS256"
CONTEXT_CLAIM = "context"


def generate_secret() -> str:
    """Return a fresh random signing secret (64 hex chars)."""
    return secrets.token_hex(32)


def sign(secret: str, context: Any) -> str:
    """Embed *context* verbatim in a signed token."""
    return jwt.encode({CONTEXT_CLAIM: context}, secret, algorithm=ALGORITHM)


def verify(secret: str, token: str) -> Any:
    """Return the context carried by *token*.

    Raises:
        AuthenticationError: If the token does not verify against *secret*.
    """
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError(str(exc)) from exc

    if CONTEXT_CLAIM not in payload:
        raise AuthenticationError(f"token has no '{CONTEXT_CLAIM}' claim")
    return payload[CONTEXT_CLAIM]
