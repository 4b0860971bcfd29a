"""
Tenant identity for upstream accounts.

A tenant is an (api_token, property_id) pair. Persisted rows only ever carry
the derived tenant key, which embeds a fingerprint of the token instead of
the token itself.
"""

import hashlib
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from core.config import TenantSettings, settings
from core.exceptions import UnknownTenant


@dataclass(frozen=True)
class Tenant:
    api_token: str
    property_id: str
    name: str = ""

    @property
    def key(self) -> str:
        return make_tenant_key(self.api_token, self.property_id)


def make_tenant_key(api_token: str, property_id: str) -> str:
    """Build the composite tenant key; both parts are required."""
    if not api_token or not str(property_id):
        raise ValueError("Tenant key requires both api_token and property_id")
    fingerprint = hashlib.sha256(api_token.encode("utf-8")).hexdigest()[:16]
    return f"{property_id}:{fingerprint}"


class TenantDirectory:
    """Resolves tenant keys to the credentials needed to reach upstream"""

    def __init__(self, tenants: Iterable[Tenant]):
        self._tenants: Dict[str, Tenant] = {t.key: t for t in tenants}

    @classmethod
    def from_settings(cls, configured: Optional[List[TenantSettings]] = None) -> "TenantDirectory":
        configured = settings.SYNC_TENANTS if configured is None else configured
        return cls(
            Tenant(api_token=t.api_token, property_id=str(t.property_id), name=t.name)
            for t in configured
        )

    def get(self, tenant_key: str) -> Tenant:
        tenant = self._tenants.get(tenant_key)
        if tenant is None:
            raise UnknownTenant(
                "No configured tenant matches this key",
                context={"tenant_key": tenant_key},
            )
        return tenant

    def all(self) -> List[Tenant]:
        return list(self._tenants.values())

    def __len__(self) -> int:
        return len(self._tenants)
