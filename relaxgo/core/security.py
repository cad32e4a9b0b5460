from dataclasses import dataclass, field
from typing import FrozenSet

from fastapi import Header, Request

from relaxgo.core.exceptions import AuthorizationError
from relaxgo.models.db_models import Identity
from relaxgo.services.identity_service import ADMIN, CUSTOMER, PROVIDER


@dataclass(frozen=True)
class AuthorizationContext:
    """
    Capabilities of one caller, resolved once per session or request.
    Screens and services ask capability questions instead of reading raw role lists.
    """
    identity_id: str
    capabilities: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_identity(cls, identity: Identity) -> "AuthorizationContext":
        return cls(identity_id=identity.id, capabilities=frozenset(identity.capabilities))

    def has_capability(self, capability: str) -> bool:
        return capability in self.capabilities

    def require(self, capability: str):
        if not self.has_capability(capability):
            raise AuthorizationError(f"'{capability}' capability required")

    @property
    def is_customer(self) -> bool:
        return self.has_capability(CUSTOMER)

    @property
    def is_provider(self) -> bool:
        return self.has_capability(PROVIDER)

    @property
    def is_admin(self) -> bool:
        return self.has_capability(ADMIN)


async def get_authorization_context(request: Request, x_user_id: str = Header(None)) -> AuthorizationContext:
    """
    Resolve the caller from the X-User-Id header.
    Authentication itself happens in front of this service (Supabase Auth);
    here we only map the identity to its capabilities.
    """
    if not x_user_id:
        raise AuthorizationError("Missing X-User-Id header")
    identity = await request.app.state.identity_service.get_current_identity(x_user_id)
    return AuthorizationContext.from_identity(identity)
