"""
Relying Party scope resolution.

Local development origins map to the local RP id; every other origin maps to
the shared root domain so one passkey works on every product subdomain.
Signature origins are checked against an exact allow-list for the scope.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlparse

from passkey_vault.config import PasskeyVaultSettings

logger = logging.getLogger(__name__)

LOCAL_HOSTNAMES = frozenset({"localhost", "127.0.0.1", "::1"})


@dataclass(frozen=True)
class RPScope:
    rp_id: str
    rp_name: str
    expected_origins: Tuple[str, ...]
    is_local: bool = False

    def allows(self, origin: Optional[str]) -> bool:
        """Exact match only; no wildcard or suffix matching."""
        return origin is not None and origin in self.expected_origins


def _hostname(origin: Optional[str]) -> Optional[str]:
    if not origin:
        return None
    try:
        return urlparse(origin).hostname
    except ValueError:
        return None


def resolve_rp_scope(origin: Optional[str], settings: PasskeyVaultSettings) -> RPScope:
    """Map a request origin to the RP id and the origins allowed for it."""
    hostname = _hostname(origin)

    if hostname is None or hostname in LOCAL_HOSTNAMES:
        return RPScope(
            rp_id=settings.local_rp_id,
            rp_name=settings.rp_name,
            expected_origins=tuple(settings.local_origins),
            is_local=True,
        )

    if origin not in settings.production_origins:
        logger.warning("Origin outside the allow-list", extra={"origin": origin})

    return RPScope(
        rp_id=settings.root_domain,
        rp_name=settings.rp_name,
        expected_origins=tuple(settings.production_origins),
    )
