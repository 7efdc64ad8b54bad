from fastapi import status
from sqlalchemy import select

from provider_admin.features.audit.models import AuditLog
from provider_admin.features.customers.models import ProviderGroup
from provider_admin.features.providers.models import Provider


PAGE = "/customer/provider-groups"


def admin_page(customer_id: str) -> str:
    return f"/admin/customers/{customer_id}/provider-groups"


async def group_names(session_factory, customer_id):
    async with session_factory() as db:
        result = await db.execute(select(ProviderGroup.name).where(ProviderGroup.customer_id == customer_id))
        return set(result.scalars().all())


async def test_page_lists_groups_with_counts(client, world, auth_headers):
    response = await client.get(PAGE, headers=await auth_headers(world.customer_admin_id))
    assert response.status_code == status.HTTP_200_OK
    page = response.json()
    assert page["customer_name"] == "Acme Health"
    north = next(g for g in page["provider_groups"] if g["name"] == "North")
    assert (north["user_count"], north["provider_count"]) == (2, 2)


async def test_only_customer_admins_manage_their_groups(client, world, auth_headers):
    for user_id in (world.group_admin_id, world.grouped_user_id, world.sysadmin_id):
        response = await client.get(PAGE, headers=await auth_headers(user_id))
        assert response.status_code == status.HTTP_403_FORBIDDEN


async def test_create_group_and_reject_duplicate_name(client, world, auth_headers, session_factory, read_toast):
    headers = await auth_headers(world.customer_admin_id)
    created = await client.post(
        PAGE, data={"intent": "create", "name": "  East ", "description": "Eastern clinics"}, headers=headers
    )
    assert created.status_code == status.HTTP_303_SEE_OTHER
    assert created.headers["location"] == PAGE
    assert read_toast(created)["title"] == "Provider group created"
    assert await group_names(session_factory, world.acme_id) == {"North", "South", "East"}

    duplicate = await client.post(PAGE, data={"intent": "create", "name": "north"}, headers=headers)
    assert duplicate.status_code == status.HTTP_400_BAD_REQUEST
    assert duplicate.json() == {"name": "Provider group name already exists"}

    # Names are unique per customer only
    elsewhere = await client.post(
        PAGE, data={"intent": "create", "name": "North"}, headers=await auth_headers(world.other_admin_id)
    )
    assert elsewhere.status_code == status.HTTP_303_SEE_OTHER


async def test_update_group(client, world, auth_headers, session_factory):
    headers = await auth_headers(world.customer_admin_id)
    renamed = await client.post(
        PAGE,
        data={"intent": "update", "providerGroupId": world.group_1_id, "name": "North East", "description": ""},
        headers=headers,
    )
    assert renamed.status_code == status.HTTP_303_SEE_OTHER

    clash = await client.post(
        PAGE, data={"intent": "update", "providerGroupId": world.group_1_id, "name": "SOUTH"}, headers=headers
    )
    assert clash.status_code == status.HTTP_400_BAD_REQUEST

    async with session_factory() as db:
        group = await db.get(ProviderGroup, world.group_1_id)
        assert (group.name, group.description) == ("North East", None)


async def test_group_of_another_customer_is_not_found(client, world, auth_headers):
    response = await client.post(
        PAGE,
        data={"intent": "delete", "providerGroupId": world.group_1_id},
        headers=await auth_headers(world.other_admin_id),
    )
    assert response.status_code == status.HTTP_404_NOT_FOUND


async def test_delete_is_blocked_while_users_or_providers_remain(client, world, auth_headers, session_factory, read_toast):
    headers = await auth_headers(world.customer_admin_id)

    with_users = await client.post(PAGE, data={"intent": "delete", "providerGroupId": world.group_1_id}, headers=headers)
    assert with_users.status_code == status.HTTP_303_SEE_OTHER
    toast = read_toast(with_users)
    assert toast["title"] == "Cannot delete provider group"
    assert "2 assigned users" in toast["description"]

    with_providers = await client.post(
        PAGE, data={"intent": "delete", "providerGroupId": world.group_2_id}, headers=headers
    )
    assert "1 provider." in read_toast(with_providers)["description"]

    async with session_factory() as db:
        provider = await db.get(Provider, world.provider_g2)
        provider.provider_group_id = None
        await db.commit()

    deleted = await client.post(PAGE, data={"intent": "delete", "providerGroupId": world.group_2_id}, headers=headers)
    assert read_toast(deleted)["title"] == "Provider group deleted"
    assert await group_names(session_factory, world.acme_id) == {"North"}

    async with session_factory() as db:
        rows = await db.execute(
            select(AuditLog.action, AuditLog.success).where(AuditLog.entity_type == "ProviderGroup")
        )
        outcomes = [tuple(row) for row in rows]
    assert ("PROVIDER_GROUP_DELETE_BLOCKED", False) in outcomes
    assert ("PROVIDER_GROUP_DELETE", True) in outcomes


async def test_system_admin_manages_any_customer(client, world, auth_headers, session_factory):
    headers = await auth_headers(world.sysadmin_id)
    listed = await client.get(admin_page(world.other_customer_id), headers=headers)
    assert listed.json()["provider_groups"] == []

    created = await client.post(
        admin_page(world.other_customer_id), json={"intent": "create", "name": "Central"}, headers=headers
    )
    assert created.headers["location"] == admin_page(world.other_customer_id)
    assert await group_names(session_factory, world.other_customer_id) == {"Central"}

    missing = await client.post(
        admin_page("01MISSINGCUSTOMER000000000"), json={"intent": "create", "name": "X"}, headers=headers
    )
    assert missing.status_code == status.HTTP_404_NOT_FOUND
