from typing import List, Optional

from relaxgo.core.exceptions import MissingReferenceError
from relaxgo.core.logger import logger
from relaxgo.models.db_models import Identity
from relaxgo.services.store import RowFilter, Store

CUSTOMER = "customer"
PROVIDER = "provider"
ADMIN = "admin"

# Role names written by older clients
ROLE_ALIASES = {
    "client": CUSTOMER,
    "masseur": PROVIDER,
}


def _normalize(role: str) -> str:
    role = role.strip().lower()
    return ROLE_ALIASES.get(role, role)


class IdentityService:
    """
    Reads identities and edits their capability set in the `users` table.
    Grant and revoke are idempotent.
    """

    def __init__(self, store: Store):
        self.store = store

    async def _load_roles(self, user_id: str) -> Optional[List[str]]:
        rows = await self.store.select("users", RowFilter().eq("id", user_id))
        if not rows:
            return None
        row = rows[0]
        roles = row.get("roles") or ([row["role"]] if row.get("role") else [CUSTOMER])
        return [_normalize(r) for r in roles]

    async def get_current_identity(self, user_id: str) -> Identity:
        roles = await self._load_roles(user_id)
        if roles is None:
            raise MissingReferenceError("User", user_id)
        return Identity(id=str(user_id), capabilities=set(roles))

    async def get_capabilities(self, user_id: str) -> set:
        roles = await self._load_roles(user_id)
        return set(roles or [])

    async def grant_capability(self, user_id: str, capability: str) -> bool:
        """Returns True when the capability was added, False when already present."""
        roles = await self._load_roles(user_id)
        if roles is None:
            raise MissingReferenceError("User", user_id)
        if capability in roles:
            return False
        await self.store.update("users", RowFilter().eq("id", user_id),
                                {"roles": sorted(set(roles) | {capability})})
        logger.info(f"🔑 Granted '{capability}' to user {user_id}")
        return True

    async def revoke_capability(self, user_id: str, capability: str) -> bool:
        """Returns True when the capability was removed. Missing users or grants are a no-op."""
        roles = await self._load_roles(user_id)
        if not roles or capability not in roles:
            return False
        await self.store.update("users", RowFilter().eq("id", user_id),
                                {"roles": sorted(set(roles) - {capability})})
        logger.info(f"🔒 Revoked '{capability}' from user {user_id}")
        return True
