from __future__ import annotations

import re
from typing import Dict, Optional, Set

import structlog

from adapters.base import DirectoryAdapter, Record

from .models import (
    TYPE_SPECIAL,
    TYPE_SYSTEM,
    TYPE_UNKNOWN,
    TYPE_UNRESOLVED,
    ResolvedIdentity,
    call_remote,
)

logger = structlog.get_logger(__name__)

SELF_PRINCIPALS = {"nt authority\\self", "s-1-5-10"}
SYSTEM_PRINCIPALS = SELF_PRINCIPALS | {"nt authority\\system", "s-1-5-18"}
SPECIAL_PRINCIPALS = {"default", "anonymous"}

IDENTITY_SPLIT_PATTERN = re.compile(r"[,;\s]+")
ALIAS_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{2,}$")


def parse_identities(text: Optional[str]) -> Set[str]:
    """Split free text on commas, semicolons and whitespace into candidate identities.

    A token is kept when it contains ``@`` or looks like a bare alias (three or
    more characters, alphanumeric first, then alphanumerics, dots, underscores
    or dashes). Anything else is dropped silently.
    """
    identities: Set[str] = set()
    for token in IDENTITY_SPLIT_PATTERN.split(text or ""):
        token = token.strip()
        if not token:
            continue
        if "@" in token or ALIAS_PATTERN.match(token):
            identities.add(token)
    return identities


def is_self_principal(token: Optional[str]) -> bool:
    return (token or "").strip().lower() in SELF_PRINCIPALS


def recipient_key(record: Record, fallback: str = "") -> str:
    """Most stable identity string a recipient record offers for later remote calls."""
    for field_name in ("Guid", "ExternalDirectoryObjectId", "Identity", "PrimarySmtpAddress", "Name"):
        value = record.get(field_name)
        if value:
            return str(value)
    return fallback


class IdentityResolver:
    def __init__(self, adapter: DirectoryAdapter) -> None:
        self._adapter = adapter

    def try_resolve_recipient(self, identity: str) -> Optional[Record]:
        identity = (identity or "").strip()
        if not identity:
            return None
        result = call_remote(self._adapter.get_recipient, identity)
        if not result.ok or not result.value:
            logger.debug("recipient_lookup_failed", identity=identity, error=result.error)
            return None
        return result.value

    def resolve(self, token: Optional[str]) -> ResolvedIdentity:
        token = (token or "").strip()
        if not token:
            return ResolvedIdentity(type_details=TYPE_UNKNOWN)

        lowered = token.lower()
        if lowered in SYSTEM_PRINCIPALS:
            return ResolvedIdentity(display_name=token, type_details=TYPE_SYSTEM, target_id=token)
        if lowered in SPECIAL_PRINCIPALS:
            return ResolvedIdentity(display_name=token, type_details=TYPE_SPECIAL, target_id=token)

        # Only a miss becomes Unresolved; a lost connection propagates.
        record = self.try_resolve_recipient(token)
        if record is None:
            return ResolvedIdentity(display_name=token, type_details=TYPE_UNRESOLVED, target_id=token)

        return ResolvedIdentity(
            display_name=str(record.get("DisplayName") or record.get("Name") or token),
            primary_email=str(record.get("PrimarySmtpAddress") or ""),
            type_details=str(record.get("RecipientTypeDetails") or record.get("RecipientType") or TYPE_UNKNOWN),
            target_id=recipient_key(record, fallback=token),
        )


class CachingResolver:
    """Resolves each distinct token once while one view is being assembled."""

    def __init__(self, resolver: IdentityResolver) -> None:
        self._resolver = resolver
        self._seen: Dict[str, ResolvedIdentity] = {}

    def resolve(self, token: str) -> ResolvedIdentity:
        key = (token or "").strip().lower()
        if key not in self._seen:
            self._seen[key] = self._resolver.resolve(token)
        return self._seen[key]
