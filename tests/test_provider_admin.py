from fastapi import status
from sqlalchemy import select

from provider_admin.features.audit.models import AuditLog
from provider_admin.features.customers.models import Customer
from provider_admin.features.providers.models import Provider


CUSTOMER_PAGE = "/customer/providers"


def page(customer_id: str) -> str:
    return f"/admin/customers/{customer_id}/providers"


async def load_provider(session_factory, provider_id):
    async with session_factory() as db:
        return await db.get(Provider, provider_id)


async def test_page_lists_the_customers_providers(client, world, auth_headers):
    response = await client.get(page(world.acme_id), headers=await auth_headers(world.sysadmin_id))
    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert len(body["providers"]) == 5
    assert {g["name"] for g in body["provider_groups"]} == {"North", "South"}

    searched = await client.get(
        page(world.acme_id), params={"search": "solo"}, headers=await auth_headers(world.sysadmin_id)
    )
    assert [p["npi"] for p in searched.json()["providers"]] == ["1000000004"]


async def test_create_provider(client, world, auth_headers, session_factory, read_toast):
    headers = await auth_headers(world.sysadmin_id)
    response = await client.post(
        page(world.acme_id),
        data={
            "intent": "create",
            "npi": "1000000099",
            "name": "Dr Fresh",
            "providerGroupId": world.group_2_id,
            "providerState": "il",
            "providerZip": "62701",
        },
        headers=headers,
    )
    assert response.status_code == status.HTTP_303_SEE_OTHER
    assert read_toast(response)["title"] == "Provider NPI created"

    async with session_factory() as db:
        provider = (await db.execute(select(Provider).where(Provider.npi == "1000000099"))).scalar_one()
        assert (provider.customer_id, provider.provider_group_id) == (world.acme_id, world.group_2_id)
        assert (provider.active, provider.provider_state) == (True, "IL")
        audit = (await db.execute(select(AuditLog).where(AuditLog.action == "PROVIDER_CREATE"))).scalar_one()
        assert audit.entity_id == provider.id


async def test_create_rejects_bad_or_taken_npis(client, world, auth_headers):
    headers = await auth_headers(world.sysadmin_id)

    short = await client.post(page(world.acme_id), data={"intent": "create", "npi": "12345", "name": "X"}, headers=headers)
    assert short.status_code == status.HTTP_400_BAD_REQUEST
    assert "npi" in short.json()

    here = await client.post(page(world.acme_id), data={"intent": "create", "npi": "1000000001", "name": "X"}, headers=headers)
    assert here.json() == {"npi": "This NPI is already registered for this customer"}

    there = await client.post(page(world.acme_id), data={"intent": "create", "npi": "2000000001", "name": "X"}, headers=headers)
    assert there.json() == {"npi": "This NPI is registered to another customer"}

    foreign_group = await client.post(
        page(world.other_customer_id),
        data={"intent": "create", "npi": "2000000002", "name": "X", "providerGroupId": world.group_1_id},
        headers=headers,
    )
    assert foreign_group.status_code == status.HTTP_400_BAD_REQUEST
    assert "providerGroupId" in foreign_group.json()


async def test_update_and_toggle_active(client, world, auth_headers, session_factory, read_toast):
    headers = await auth_headers(world.sysadmin_id)
    updated = await client.post(
        page(world.acme_id),
        data={"intent": "update", "providerId": world.provider_ungrouped, "name": "Dr Solo Renamed", "providerCity": "Peoria"},
        headers=headers,
    )
    assert read_toast(updated)["title"] == "Provider NPI updated"

    toggled = await client.post(
        page(world.acme_id),
        data={"intent": "toggle-active", "providerId": world.provider_ungrouped, "active": "false"},
        headers=headers,
    )
    assert read_toast(toggled)["title"] == "Inactivated"

    provider = await load_provider(session_factory, world.provider_ungrouped)
    assert (provider.name, provider.provider_city, provider.active) == ("Dr Solo Renamed", "Peoria", False)


async def test_provider_of_another_customer_is_not_found(client, world, auth_headers):
    response = await client.post(
        page(world.acme_id),
        data={"intent": "toggle-active", "providerId": world.provider_other_customer, "active": "false"},
        headers=await auth_headers(world.sysadmin_id),
    )
    assert response.status_code == status.HTTP_404_NOT_FOUND


async def test_group_move_keeps_assignments_consistent(client, world, auth_headers, assign, session_factory, read_toast):
    headers = await auth_headers(world.sysadmin_id)
    await assign(world.grouped_user_id, world.provider_g1_a)

    blocked = await client.post(
        page(world.acme_id),
        data={"intent": "update-group", "providerId": world.provider_g1_a, "providerGroupId": world.group_2_id},
        headers=headers,
    )
    assert blocked.status_code == status.HTTP_303_SEE_OTHER
    toast = read_toast(blocked)
    assert toast["title"] == "Group assignment blocked"
    assert "1 user outside" in toast["description"]
    assert (await load_provider(session_factory, world.provider_g1_a)).provider_group_id == world.group_1_id

    # Unassigned providers move freely, also out of any group
    moved = await client.post(
        page(world.acme_id),
        data={"intent": "update-group", "providerId": world.provider_g1_b, "providerGroupId": ""},
        headers=headers,
    )
    assert read_toast(moved)["title"] == "Group removed"
    assert (await load_provider(session_factory, world.provider_g1_b)).provider_group_id is None


async def test_ungrouped_users_keep_a_provider_out_of_groups(client, world, auth_headers, assign, read_toast):
    await assign(world.ungrouped_user_id, world.provider_ungrouped)
    response = await client.post(
        page(world.acme_id),
        data={"intent": "update-group", "providerId": world.provider_ungrouped, "providerGroupId": world.group_1_id},
        headers=await auth_headers(world.sysadmin_id),
    )
    assert read_toast(response)["title"] == "Group assignment blocked"


async def test_delete_requires_no_assignments(client, world, auth_headers, assign, session_factory, read_toast):
    headers = await auth_headers(world.sysadmin_id)
    await assign(world.grouped_user_id, world.provider_g1_a)

    blocked = await client.post(
        page(world.acme_id), data={"intent": "delete", "providerId": world.provider_g1_a}, headers=headers
    )
    assert read_toast(blocked)["title"] == "Delete blocked"

    deleted = await client.post(
        page(world.acme_id), data={"intent": "delete", "providerId": world.provider_inactive}, headers=headers
    )
    assert read_toast(deleted)["title"] == "Provider deleted"
    assert await load_provider(session_factory, world.provider_inactive) is None
    assert await load_provider(session_factory, world.provider_g1_a) is not None


async def test_customer_admin_only_moves_providers_between_groups(client, world, auth_headers, session_factory, read_toast):
    headers = await auth_headers(world.customer_admin_id)

    listed = await client.get(CUSTOMER_PAGE, headers=headers)
    assert len(listed.json()["providers"]) == 5

    moved = await client.post(
        CUSTOMER_PAGE,
        data={"intent": "update-group", "providerId": world.provider_ungrouped, "providerGroupId": world.group_2_id},
        headers=headers,
    )
    assert read_toast(moved)["title"] == "Group assigned"
    assert (await load_provider(session_factory, world.provider_ungrouped)).provider_group_id == world.group_2_id

    other_intent = await client.post(
        CUSTOMER_PAGE, data={"intent": "delete", "providerId": world.provider_ungrouped}, headers=headers
    )
    assert other_intent.status_code == status.HTTP_400_BAD_REQUEST

    foreign = await client.post(
        CUSTOMER_PAGE,
        data={"intent": "update-group", "providerId": world.provider_other_customer, "providerGroupId": ""},
        headers=headers,
    )
    assert foreign.status_code == status.HTTP_404_NOT_FOUND

    group_admin = await client.get(CUSTOMER_PAGE, headers=await auth_headers(world.group_admin_id))
    assert group_admin.status_code == status.HTTP_403_FORBIDDEN


async def test_create_and_update_customers(client, world, auth_headers, session_factory, read_toast):
    headers = await auth_headers(world.sysadmin_id)

    created = await client.post(
        "/admin/customers",
        data={"intent": "create", "name": "Bright Clinic", "description": "New tenant", "baseNpi": "3000000000"},
        headers=headers,
    )
    assert created.status_code == status.HTTP_303_SEE_OTHER
    assert read_toast(created)["title"] == "Customer created"

    duplicate = await client.post("/admin/customers", data={"intent": "create", "name": "ACME HEALTH"}, headers=headers)
    assert duplicate.json() == {"name": "Customer name already exists"}

    bad_npi = await client.post(
        "/admin/customers", data={"intent": "create", "name": "Odd", "baseNpi": "12"}, headers=headers
    )
    assert "baseNpi" in bad_npi.json()

    renamed = await client.post(
        "/admin/customers",
        data={"intent": "update", "customerId": world.other_customer_id, "name": "Other Care"},
        headers=headers,
    )
    assert read_toast(renamed)["title"] == "Customer updated"

    clash = await client.post(
        "/admin/customers",
        data={"intent": "update", "customerId": world.other_customer_id, "name": "Bright Clinic"},
        headers=headers,
    )
    assert clash.status_code == status.HTTP_400_BAD_REQUEST

    async with session_factory() as db:
        names = set((await db.execute(select(Customer.name))).scalars().all())
        assert names == {"Acme Health", "Other Care", "Bright Clinic"}
        created_audits = (await db.execute(
            select(AuditLog.success).where(AuditLog.action == "CUSTOMER_CREATE")
        )).scalars().all()
        assert sorted(created_audits) == [False, True]


async def test_customer_admin_cannot_create_customers(client, world, auth_headers):
    response = await client.post(
        "/admin/customers", data={"intent": "create", "name": "Mine"}, headers=await auth_headers(world.customer_admin_id)
    )
    assert response.status_code == status.HTTP_403_FORBIDDEN
