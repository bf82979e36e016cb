from __future__ import annotations

import logging
from typing import List, Optional

from arang_chat.infra.gateway import PersistenceGateway
from arang_chat.infra.query import Order, Row

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"
ROLE_CUSTOMER = "customer"
ROLE_ADMIN = "admin"


class ProfileDirectory:
    """Read-only view over the storefront profile roster."""

    def __init__(self, gateway: PersistenceGateway) -> None:
        self.gateway = gateway

    async def get(self, profile_id: str) -> Optional[Row]:
        rows = await self.gateway.find(PROFILES_TABLE, {"id": profile_id}, limit=1)
        return rows[0] if rows else None

    async def customers(self) -> List[Row]:
        return await self.gateway.find(PROFILES_TABLE, {"role": ROLE_CUSTOMER}, order=Order("created_at"))

    async def admins(self) -> List[Row]:
        return await self.gateway.find(PROFILES_TABLE, {"role": ROLE_ADMIN}, order=Order("created_at"))

    async def display_name(self, profile_id: str) -> Optional[str]:
        profile = await self.get(profile_id)
        if profile is None:
            logger.info("profile_not_found", extra={"extra": {"profile_id": profile_id}})
            return None
        return profile_label(profile)


def profile_label(profile: Row) -> Optional[str]:
    return profile.get("name") or profile.get("email") or None
