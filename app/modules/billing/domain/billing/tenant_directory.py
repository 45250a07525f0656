"""Read-only view of tenant organizations for billing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import TenantSubscription
from app.models.tenant import Tenant
from app.shared.core.exceptions import ResourceNotFoundError


@dataclass(frozen=True)
class TenantProfile:
    tenant_id: UUID
    name: str
    contact_email: Optional[str]


class TenantDirectory:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def exists(self, tenant_id: UUID) -> bool:
        result = await self.db.execute(
            select(Tenant.id).where(Tenant.id == tenant_id, Tenant.is_deleted.is_(False))
        )
        return result.scalar_one_or_none() is not None

    async def get_profile(self, tenant_id: UUID) -> TenantProfile:
        tenant = (
            await self.db.execute(
                select(Tenant).where(Tenant.id == tenant_id, Tenant.is_deleted.is_(False))
            )
        ).scalar_one_or_none()
        if tenant is None:
            raise ResourceNotFoundError(f"Tenant {tenant_id} not found")
        return TenantProfile(
            tenant_id=tenant.id, name=tenant.name, contact_email=tenant.contact_email
        )

    async def find_by_gateway_subscription(self, subscription_ref: str) -> Optional[UUID]:
        result = await self.db.execute(
            select(TenantSubscription.tenant_id).where(
                TenantSubscription.gateway_subscription_id == subscription_ref
            )
        )
        return result.scalar_one_or_none()

    async def find_by_gateway_customer(self, customer_ref: str) -> Optional[UUID]:
        result = await self.db.execute(
            select(TenantSubscription.tenant_id)
            .where(TenantSubscription.gateway_customer_id == customer_ref)
            .limit(1)
        )
        return result.scalar_one_or_none()
