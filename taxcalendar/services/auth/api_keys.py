"""Calendar API credentials: key issuance, digests and role scopes."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import secrets
from uuid import uuid4


SCOPE_CALENDAR_READ = "calendar:read"
# Generation, lifecycle transitions and document attachments.
SCOPE_EVENTS_WRITE = "events:write"
# Tax profile and template setup.
SCOPE_SETUP_WRITE = "setup:write"

_READER_SCOPES = frozenset({SCOPE_CALENDAR_READ})
_EDITOR_SCOPES = _READER_SCOPES | {SCOPE_EVENTS_WRITE}

ROLE_SCOPES: dict[str, frozenset[str]] = {
    "reader": _READER_SCOPES,
    "editor": _EDITOR_SCOPES,
    "admin": _EDITOR_SCOPES | {SCOPE_SETUP_WRITE},
}

KEY_MARKER = "txck"
_PREFIX_LENGTH = 12


@dataclass(frozen=True)
class IssuedApiKey:
    key_id: str
    raw_key: str
    key_prefix: str
    key_hash: str

    @property
    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.raw_key}"}


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLE_SCOPES:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_has_scope(role: str, scope: str) -> bool:
    return scope in ROLE_SCOPES.get(role, frozenset())


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def key_prefix_of(raw_key: str) -> str:
    # Marker plus the head of the key id; the secret segment starts after it.
    return raw_key[:_PREFIX_LENGTH]


def issue_api_key(*, key_id: str | None = None) -> IssuedApiKey:
    """Mint a ``txck_<key id>_<secret>`` bearer key.

    The raw key is returned once for display; callers persist only the
    prefix and the SHA-256 digest.
    """
    resolved_id = key_id or uuid4().hex
    raw_key = f"{KEY_MARKER}_{resolved_id}_{secrets.token_urlsafe(32)}"
    return IssuedApiKey(
        key_id=resolved_id,
        raw_key=raw_key,
        key_prefix=key_prefix_of(raw_key),
        key_hash=hash_api_key(raw_key),
    )
