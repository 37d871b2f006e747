import hmac
from dataclasses import dataclass
from uuid import NAMESPACE_DNS, UUID, uuid5

from fastapi import Depends, Header, HTTPException, status

from api.config.settings import AuthMode, settings
from api.v1.core.exceptions import ForbiddenError

SERVICE_ROLE = "service"


def string_to_uuid(text: str) -> UUID:
    """Convert a string to a UUID, hashing non-UUID identifiers deterministically."""
    try:
        return UUID(text)
    except ValueError:
        return uuid5(NAMESPACE_DNS, text)


@dataclass
class Principal:
    """Represents the current authenticated user/context."""

    user_id: str
    org_id: str
    roles: list[str]
    email: str | None = None

    @property
    def user_uuid(self) -> UUID:
        """Get the user ID as a UUID for database operations."""
        return string_to_uuid(self.user_id)

    @property
    def org_uuid(self) -> UUID:
        """Get the org ID as a UUID for database operations."""
        return string_to_uuid(self.org_id)

    @property
    def owner_uuid(self) -> UUID:
        """Owner identity used for job scoping."""
        return self.user_uuid

    @property
    def is_service(self) -> bool:
        return SERVICE_ROLE in self.roles


def _has_service_token(authorization: str | None) -> bool:
    if not settings.service_token or not authorization:
        return False
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return False
    return hmac.compare_digest(token.strip(), settings.service_token)


async def get_principal(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
    x_org_id: str | None = Header(None, alias="X-Org-ID"),
    authorization: str | None = Header(None, alias="Authorization"),
) -> Principal:
    """
    Dependency injection function to get the current principal.

    Behavior based on AUTH_MODE:
    - none: Returns dev defaults with admin and service roles
    - dev: Extract identity from headers; a valid service token adds service trust
    - oidc: not implemented
    """
    if settings.auth_mode == AuthMode.NONE:
        return Principal(
            user_id=settings.dev_user_id,
            org_id=settings.dev_org_id,
            roles=["admin", SERVICE_ROLE],
        )
    elif settings.auth_mode == AuthMode.DEV:
        service = _has_service_token(authorization)
        if service and not x_user_id:
            return Principal(user_id="system", org_id="system", roles=[SERVICE_ROLE])

        if x_user_id is None or x_org_id is None or not x_user_id or not x_org_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="X-User-ID and X-Org-ID headers are required in dev auth mode",
            )

        roles = ["user"]
        if service:
            roles.append(SERVICE_ROLE)
        return Principal(user_id=x_user_id, org_id=x_org_id, roles=roles)
    elif settings.auth_mode == AuthMode.OIDC:
        raise NotImplementedError("OIDC auth mode not implemented yet")
    else:
        raise ValueError(f"Unknown auth mode: {settings.auth_mode}")


# Convenience type alias for dependency injection
PrincipalDep = Depends(get_principal)


async def require_service_principal(principal: Principal = PrincipalDep) -> Principal:
    """Guard for worker, maintenance and ledger endpoints."""
    if not principal.is_service:
        raise ForbiddenError(
            "Service credentials required", details={"required_role": SERVICE_ROLE}
        )
    return principal


ServicePrincipalDep = Depends(require_service_principal)


def ensure_owner(owner_id: UUID, principal: Principal) -> None:
    """Reject access to a resource owned by someone other than the caller."""
    if owner_id != principal.owner_uuid:
        raise ForbiddenError(
            "Resource belongs to another user", details={"code": "NOT_OWNER"}
        )
