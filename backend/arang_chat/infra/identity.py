from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from arang_chat.domain.profiles.directory import ProfileDirectory, profile_label
from arang_chat.domain.support_chat.schemas import ChatRole

logger = logging.getLogger(__name__)

PROXY_AUTH_HEADER_SECRET = "X-Proxy-Auth-Secret"
PROXY_AUTH_HEADER_USER = "X-Auth-User-Id"


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: ChatRole
    display_name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role is ChatRole.admin


def build_proxy_headers(
    *,
    proxy_secret: str,
    user_id: str,
    secret_header: str = PROXY_AUTH_HEADER_SECRET,
    user_header: str = PROXY_AUTH_HEADER_USER,
) -> dict[str, str]:
    if not proxy_secret:
        raise ValueError("proxy_secret is required")
    if not user_id:
        raise ValueError("user_id is required")
    return {secret_header: proxy_secret, user_header: user_id}


class ProxyIdentityProvider:
    """Resolves the caller from headers set by the trusted auth proxy."""

    def __init__(
        self,
        directory: ProfileDirectory,
        *,
        proxy_secret: str,
        secret_header: str = PROXY_AUTH_HEADER_SECRET,
        user_header: str = PROXY_AUTH_HEADER_USER,
    ) -> None:
        self.directory = directory
        self.proxy_secret = proxy_secret
        self.secret_header = secret_header
        self.user_header = user_header

    def _trusted(self, headers: Mapping[str, str]) -> bool:
        provided = headers.get(self.secret_header)
        if not provided or not self.proxy_secret:
            return False
        return hmac.compare_digest(provided.encode("utf-8"), self.proxy_secret.encode("utf-8"))

    async def current_user(self, headers: Mapping[str, str]) -> CurrentUser | None:
        if not self._trusted(headers):
            return None
        user_id = (headers.get(self.user_header) or "").strip()
        if not user_id:
            return None
        profile = await self.directory.get(user_id)
        if profile is None:
            logger.info("identity_profile_missing", extra={"extra": {"user_id": user_id}})
            return None
        try:
            role = ChatRole(profile.get("role") or ChatRole.customer.value)
        except ValueError:
            logger.warning("identity_role_unknown", extra={"extra": {"user_id": user_id}})
            return None
        return CurrentUser(id=user_id, role=role, display_name=profile_label(profile))
