"""Request-scoped tenant identity."""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from propnova.core.exceptions import AuthenticationError
from propnova.core.logging import bind_contextvars
from propnova.core.security import decode_token, verify_token_type

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class TenantContext:
    """Who the request bills against.

    ``tenant_id`` is the organization; ``subject`` the user acting for it.
    """

    tenant_id: str
    subject: str


async def get_tenant(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> TenantContext:
    """Decode the bearer token into a TenantContext.

    The ``org_id`` claim names the tenant; personal accounts without one are
    their own tenant (``sub``).
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError()

    payload = decode_token(credentials.credentials)
    if payload is None or not verify_token_type(payload, "access"):
        raise AuthenticationError("Could not validate credentials")

    subject = payload.get("sub")
    if not subject:
        raise AuthenticationError("Could not validate credentials")

    tenant = TenantContext(tenant_id=str(payload.get("org_id") or subject), subject=str(subject))
    bind_contextvars(tenant_id=tenant.tenant_id)
    return tenant


CurrentTenant = Annotated[TenantContext, Depends(get_tenant)]
