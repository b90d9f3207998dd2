"""Authentication dependencies for API endpoints."""

from collections.abc import Awaitable, Callable
from typing import Annotated
from uuid import UUID, uuid4

from fastapi import Depends, Request, Security
from fastapi.security import APIKeyHeader
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caretaker.api.errors import ErrorCode, ForbiddenError, UnauthorizedError
from caretaker.config import settings
from caretaker.db.database import get_session
from caretaker.db.models import APIKeyDB, TenantDB
from caretaker.models.enums import APIKeyScope
from caretaker.services.auth import validate_api_key

# API key header scheme
api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


class AuthContext:
    """Authentication context: the calling tenant and the key it used."""

    def __init__(
        self,
        tenant: TenantDB | None,
        api_key: APIKeyDB,
        scopes: list[APIKeyScope],
    ):
        self.tenant = tenant
        self.api_key = api_key
        self.scopes = scopes

    @property
    def tenant_id(self) -> UUID:
        """Get the authenticated tenant ID."""
        if self.tenant is None:
            raise ForbiddenError(
                "No tenant exists yet. Create one with POST /api/v1/tenants.",
                code=ErrorCode.NO_TENANT,
            )
        return self.tenant.id

    @property
    def actor_id(self) -> UUID | None:
        """ID of the calling API key, recorded as the audit actor."""
        return self.api_key.id

    def has_scope(self, scope: APIKeyScope) -> bool:
        """Check if the authenticated key has a specific scope."""
        if APIKeyScope.ADMIN in self.scopes:
            return True
        return scope in self.scopes

    def require_scope(self, scope: APIKeyScope) -> None:
        """Raise ForbiddenError if the key doesn't have the required scope."""
        if not self.has_scope(scope):
            raise ForbiddenError(
                f"This operation requires the '{scope}' scope",
                code=ErrorCode.INSUFFICIENT_SCOPE,
                details={"required_scope": str(scope)},
            )


def _privileged_context(tenant: TenantDB | None, name: str) -> AuthContext:
    mock_key = APIKeyDB(
        key_hash=name,
        key_prefix=name,
        name=name,
        tenant_id=tenant.id if tenant else None,
        scopes=[s.value for s in APIKeyScope],
    )
    return AuthContext(tenant=tenant, api_key=mock_key, scopes=list(APIKeyScope))


async def _first_tenant(session: AsyncSession) -> TenantDB | None:
    result = await session.execute(select(TenantDB).order_by(TenantDB.created_at).limit(1))
    return result.scalar_one_or_none()


async def get_auth_context(
    request: Request,
    authorization: str | None = Security(api_key_header),
    session: AsyncSession = Depends(get_session),
) -> AuthContext:
    """Get authentication context from the request.

    Raises:
        UnauthorizedError: If authentication fails
    """
    if settings.auth_disabled:
        # Development only: act as the first tenant (or an unsaved placeholder)
        tenant = await _first_tenant(session) or TenantDB(id=uuid4(), name="dev-tenant")
        auth_context = _privileged_context(tenant, "auth-disabled")
        request.state.auth = auth_context
        return auth_context

    if not authorization:
        raise UnauthorizedError(
            "Missing Authorization header. Use 'Authorization: Bearer <api_key>'",
            code=ErrorCode.MISSING_API_KEY,
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not authorization.startswith("Bearer "):
        raise UnauthorizedError(
            "Invalid format. Use 'Authorization: Bearer <api_key>'",
            code=ErrorCode.INVALID_AUTH_HEADER,
            headers={"WWW-Authenticate": "Bearer"},
        )

    api_key = authorization[7:]

    # Bootstrap key: admin access, acting as the first tenant once one exists
    if settings.bootstrap_api_key and api_key == settings.bootstrap_api_key:
        auth_context = _privileged_context(await _first_tenant(session), "bootstrap")
        request.state.auth = auth_context
        return auth_context

    validated = await validate_api_key(session, api_key)
    if not validated:
        raise UnauthorizedError(
            "Invalid or revoked API key",
            code=ErrorCode.INVALID_API_KEY,
            headers={"WWW-Authenticate": "Bearer"},
        )

    api_key_db, tenant_db = validated
    auth_context = AuthContext(
        tenant=tenant_db,
        api_key=api_key_db,
        scopes=[APIKeyScope(s) for s in api_key_db.scopes],
    )
    request.state.auth = auth_context
    return auth_context


# Type alias for dependency injection
Auth = Annotated[AuthContext, Depends(get_auth_context)]


def require_scope(
    scope: APIKeyScope,
) -> Callable[..., Awaitable[None]]:
    """Dependency factory that requires a specific scope.

    Usage:
        @router.post("/admin-only")
        async def admin_endpoint(
            auth: Auth,
            _: None = Depends(require_scope(APIKeyScope.ADMIN))
        ):
            ...
    """

    async def check_scope(auth: Auth) -> None:
        auth.require_scope(scope)

    return check_scope


# Pre-built scope dependencies
RequireRead = Depends(require_scope(APIKeyScope.READ))
RequireWrite = Depends(require_scope(APIKeyScope.WRITE))
RequireAdmin = Depends(require_scope(APIKeyScope.ADMIN))
