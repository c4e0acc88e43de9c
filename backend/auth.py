"""
Connection token check.

A single pass/fail predicate evaluated once per WebSocket connection.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from constants import TOKEN_MIN_LENGTH


@dataclass(frozen=True)
class AuthResult:
    ok: bool
    user_id: Optional[str] = None
    reason: Optional[str] = None


def verify_token(token: Optional[str]) -> AuthResult:
    """
    Accept any token of at least TOKEN_MIN_LENGTH characters.
    """
    if not token:
        return AuthResult(ok=False, reason="missing token")
    if len(token) < TOKEN_MIN_LENGTH:
        return AuthResult(ok=False, reason="bad token")
    return AuthResult(ok=True, user_id="demo-user")
