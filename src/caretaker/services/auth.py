"""Authentication service for tenants and API key management."""

import secrets
from datetime import UTC, datetime
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from caretaker.db.models import APIKeyDB, TenantDB
from caretaker.models.enums import APIKeyScope
from caretaker.models.tenant import APIKeyCreate, APIKeyCreated
from caretaker.services.audit import AuditAction, log_event
from caretaker.services.errors import MaintenanceError, MaintenanceErrorCode

# Use argon2id with secure defaults
_hasher = PasswordHasher()


def generate_api_key(environment: str = "live") -> tuple[str, str, str]:
    """Generate a new API key.

    Returns:
        Tuple of (full_key, key_hash, key_prefix)
    """
    random_part = secrets.token_hex(32)
    full_key = f"care_{environment}_{random_part}"
    key_hash = _hasher.hash(full_key)
    # 8 chars of the random part narrow the argon2 verification candidates
    key_prefix = f"care_{environment}_{random_part[:8]}"
    return full_key, key_hash, key_prefix


def verify_api_key(key: str, key_hash: str) -> bool:
    """Verify an API key against its hash."""
    try:
        _hasher.verify(key_hash, key)
        return True
    except VerifyMismatchError:
        return False


async def create_tenant(session: AsyncSession, name: str) -> TenantDB:
    """Create a tenant; names are unique."""
    existing = await session.execute(select(TenantDB).where(TenantDB.name == name))
    if existing.scalar_one_or_none():
        raise MaintenanceError(
            MaintenanceErrorCode.DUPLICATE_TENANT, f"Tenant '{name}' already exists"
        )

    tenant = TenantDB(name=name)
    try:
        async with session.begin_nested():
            session.add(tenant)
            await session.flush()
    except IntegrityError as exc:
        raise MaintenanceError(
            MaintenanceErrorCode.DUPLICATE_TENANT, f"Tenant '{name}' already exists"
        ) from exc

    await log_event(session, "tenant", tenant.id, AuditAction.TENANT_CREATED, tenant.id)
    return tenant


async def create_api_key(
    session: AsyncSession,
    tenant_id: UUID,
    key_data: APIKeyCreate,
    environment: str = "live",
) -> APIKeyCreated:
    """Create a new API key for a tenant.

    Returns:
        Created API key with the raw key (only time it's available)
    """
    full_key, key_hash, key_prefix = generate_api_key(environment)

    api_key_db = APIKeyDB(
        key_hash=key_hash,
        key_prefix=key_prefix,
        name=key_data.name,
        tenant_id=tenant_id,
        scopes=[scope.value for scope in key_data.scopes],
    )
    session.add(api_key_db)
    await session.flush()

    await log_event(
        session,
        "api_key",
        api_key_db.id,
        AuditAction.API_KEY_CREATED,
        tenant_id,
        {"name": key_data.name, "key_prefix": key_prefix},
    )

    return APIKeyCreated(
        id=api_key_db.id,
        key=full_key,
        key_prefix=key_prefix,
        name=api_key_db.name,
        tenant_id=api_key_db.tenant_id,
        scopes=[APIKeyScope(s) for s in api_key_db.scopes],
        created_at=api_key_db.created_at,
    )


async def validate_api_key(
    session: AsyncSession,
    key: str,
) -> tuple[APIKeyDB, TenantDB] | None:
    """Validate an API key and return the key record and tenant.

    Argon2 hashes are salted, so candidates are narrowed by prefix and then
    verified one by one.
    """
    parts = key.split("_")
    if len(parts) < 3:
        return None
    key_prefix = f"{parts[0]}_{parts[1]}_{parts[2][:8]}"

    result = await session.execute(
        select(APIKeyDB, TenantDB)
        .join(TenantDB, APIKeyDB.tenant_id == TenantDB.id)
        .where(
            APIKeyDB.key_prefix == key_prefix,
            APIKeyDB.revoked_at.is_(None),
        )
    )
    candidates = result.all()

    for api_key_db, tenant_db in candidates:
        if verify_api_key(key, api_key_db.key_hash):
            await session.execute(
                update(APIKeyDB)
                .where(APIKeyDB.id == api_key_db.id)
                .values(last_used_at=datetime.now(UTC))
            )
            return api_key_db, tenant_db

    return None


async def list_api_keys(session: AsyncSession, tenant_id: UUID) -> list[APIKeyDB]:
    """List active API keys of a tenant, newest first."""
    result = await session.execute(
        select(APIKeyDB)
        .where(APIKeyDB.tenant_id == tenant_id)
        .where(APIKeyDB.revoked_at.is_(None))
        .order_by(APIKeyDB.created_at.desc())
    )
    return list(result.scalars().all())


async def revoke_api_key(
    session: AsyncSession,
    tenant_id: UUID,
    key_id: UUID,
) -> APIKeyDB | None:
    """Revoke an API key of the tenant. Revoking twice is a no-op."""
    result = await session.execute(
        select(APIKeyDB).where(APIKeyDB.id == key_id).where(APIKeyDB.tenant_id == tenant_id)
    )
    api_key_db = result.scalar_one_or_none()
    if not api_key_db:
        return None

    if api_key_db.revoked_at is None:
        api_key_db.revoked_at = datetime.now(UTC)
        await session.flush()
        await log_event(
            session, "api_key", api_key_db.id, AuditAction.API_KEY_REVOKED, tenant_id
        )
    return api_key_db
