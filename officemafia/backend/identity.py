"""Host token and session code helpers."""

from __future__ import annotations

import secrets
import uuid

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6


def new_host_token() -> str:
    """Generate a random 128-bit host correlation token."""
    return str(uuid.uuid4())


def generate_session_code(length: int = CODE_LENGTH) -> str:
    """Generate a short shareable code. Only store implementations call this."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return code.strip().upper()


def host_token_matches(expected: str, raw_token: str | None) -> bool:
    if not raw_token:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), raw_token.encode("utf-8"))
