"""
Session credentials and the subject identifier derived from them.

A session token is ``<userId>%3A%3A<jwt>``. Only this module knows that
layout; the rest of the package sees ``Credential`` and its opaque
``subject_id``.
"""

from dataclasses import dataclass, field

import jwt

SESSION_SEPARATOR = "%3A%3A"


@dataclass(frozen=True)
class Credential:
    """A session token plus the identifiers derived from it."""
    token: str = field(repr=False)
    user_id: str
    subject_id: str

    @classmethod
    def from_session_token(cls, token: str) -> "Credential":
        """Split a session token and derive its subject identifier.

        Raises:
            ValueError: If the token is not a session token with a JWT part
                carrying a ``sub`` claim
        """
        if not token or SESSION_SEPARATOR not in token:
            raise ValueError("Session token must be '<userId>%3A%3A<jwt>'")
        user_id, access_token = token.split(SESSION_SEPARATOR, 1)
        if not user_id:
            raise ValueError("Session token is missing the user id")
        return cls(token=token, user_id=user_id, subject_id=derive_subject_id(access_token))


def _claims(access_token: str) -> dict:
    try:
        return jwt.decode(access_token, options={"verify_signature": False})
    except jwt.InvalidTokenError as e:
        raise ValueError(f"Access token is not a valid JWT: {e}")


def derive_subject_id(access_token: str) -> str:
    """Return the stable ``sub`` claim of an access token.

    The signature is not verified; the value is only used as a cache key.
    """
    sub = _claims(access_token).get("sub")
    if not isinstance(sub, str) or not sub:
        raise ValueError("Access token has no 'sub' claim")
    return sub


def build_session_token(access_token: str) -> str:
    """Build a session token from a raw access token.

    The ``sub`` claim has the form ``<provider>|<userId>``.
    """
    sub = derive_subject_id(access_token)
    if "|" not in sub:
        raise ValueError(f"Unexpected 'sub' claim format: {sub}")
    user_id = sub.split("|", 1)[1]
    return f"{user_id}{SESSION_SEPARATOR}{access_token}"
