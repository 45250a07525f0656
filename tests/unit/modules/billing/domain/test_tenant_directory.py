from uuid import uuid4

import pytest

from app.modules.billing.domain.billing.tenant_directory import TenantDirectory
from app.shared.core.exceptions import ResourceNotFoundError


@pytest.mark.asyncio
async def test_exists_ignores_deleted_tenants(db_session, tenant):
    directory = TenantDirectory(db_session)

    assert await directory.exists(tenant.id) is True
    assert await directory.exists(uuid4()) is False

    tenant = await db_session.merge(tenant)
    tenant.is_deleted = True
    await db_session.commit()
    assert await directory.exists(tenant.id) is False


@pytest.mark.asyncio
async def test_profile(db_session, tenant):
    profile = await TenantDirectory(db_session).get_profile(tenant.id)

    assert profile.name == "Acme Support"
    assert profile.contact_email == "billing@acme.test"

    with pytest.raises(ResourceNotFoundError):
        await TenantDirectory(db_session).get_profile(uuid4())


@pytest.mark.asyncio
async def test_lookup_by_gateway_references(db_session, tenant, subscription_factory):
    await subscription_factory(
        tenant.id, gateway_subscription_id="sub_abc", gateway_customer_id="cus_abc"
    )
    directory = TenantDirectory(db_session)

    assert await directory.find_by_gateway_subscription("sub_abc") == tenant.id
    assert await directory.find_by_gateway_customer("cus_abc") == tenant.id
    assert await directory.find_by_gateway_subscription("sub_other") is None
    assert await directory.find_by_gateway_customer("cus_other") is None
