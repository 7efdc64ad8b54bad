from fastapi import status
from sqlalchemy import select

from provider_admin.features.audit.models import AuditLog
from provider_admin.features.providers.models import UserNpi
from provider_admin.features.users.models import User


def page(customer_id: str) -> str:
    return f"/admin/customers/{customer_id}/users"


async def audit_actions(session_factory):
    async with session_factory() as db:
        result = await db.execute(select(AuditLog).order_by(AuditLog.created_at, AuditLog.id))
        return [(a.action, a.success) for a in result.scalars().all()]


async def test_customer_list_has_counts(client, world, auth_headers):
    response = await client.get("/admin/customers", headers=await auth_headers(world.sysadmin_id))
    assert response.status_code == status.HTTP_200_OK
    acme = next(c for c in response.json() if c["id"] == world.acme_id)
    assert acme["provider_group_count"] == 2
    assert acme["provider_count"] == 5
    assert acme["user_count"] == 4


async def test_admin_routes_require_system_admin(client, world, auth_headers):
    headers = await auth_headers(world.customer_admin_id)
    assert (await client.get("/admin/customers", headers=headers)).status_code == status.HTTP_403_FORBIDDEN
    assert (await client.get(page(world.acme_id), headers=headers)).status_code == status.HTTP_403_FORBIDDEN


async def test_unknown_customer_is_not_found(client, world, auth_headers):
    headers = await auth_headers(world.sysadmin_id)
    missing = page("01MISSINGCUSTOMER000000000")
    assert (await client.get(missing, headers=headers)).status_code == status.HTTP_404_NOT_FOUND
    response = await client.post(
        missing, json={"intent": "check-availability", "field": "email", "value": "a@b.co"}, headers=headers
    )
    assert response.status_code == status.HTTP_404_NOT_FOUND


async def test_page_lists_every_user_of_the_customer(client, world, auth_headers):
    response = await client.get(page(world.acme_id), headers=await auth_headers(world.sysadmin_id))
    assert {u["username"] for u in response.json()["users"]} == {"alice", "gary", "bob", "una"}


async def test_create_inactive_user_is_audited(client, world, auth_headers, session_factory):
    response = await client.post(
        page(world.acme_id),
        json={
            "intent": "create",
            "name": "Dormant",
            "email": "dormant@example.com",
            "username": "dormant",
            "role": "customer-admin",
            "active": False,
        },
        headers=await auth_headers(world.sysadmin_id),
    )
    assert response.status_code == status.HTTP_303_SEE_OTHER
    async with session_factory() as db:
        user = (await db.execute(select(User).where(User.username == "dormant"))).scalar_one()
        assert user.active is False
    assert ("USER_CREATE", True) in await audit_actions(session_factory)


async def test_refused_create_is_audited(client, world, auth_headers, session_factory):
    response = await client.post(
        page(world.acme_id),
        json={"intent": "create", "name": "Dup", "email": "alice@example.com", "username": "alice2", "role": "basic-user"},
        headers=await auth_headers(world.sysadmin_id),
    )
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert ("USER_CREATE_ATTEMPT", False) in await audit_actions(session_factory)


async def test_delete_requires_matching_confirmation(client, world, auth_headers, assign, session_factory, read_toast):
    await assign(world.grouped_user_id, world.provider_g1_a)
    headers = await auth_headers(world.sysadmin_id)

    wrong = await client.post(
        page(world.acme_id), json={"intent": "delete", "userId": world.grouped_user_id, "confirm": "robert"}, headers=headers
    )
    assert read_toast(wrong)["title"] == "Confirmation mismatch"
    assert ("USER_DELETE_BLOCKED", False) in await audit_actions(session_factory)

    done = await client.post(
        page(world.acme_id), json={"intent": "delete", "userId": world.grouped_user_id, "confirm": "BOB"}, headers=headers
    )
    assert read_toast(done)["type"] == "success"
    async with session_factory() as db:
        assert await db.get(User, world.grouped_user_id) is None
        remaining = await db.execute(select(UserNpi).where(UserNpi.user_id == world.grouped_user_id))
        assert remaining.first() is None
    assert ("USER_DELETE", True) in await audit_actions(session_factory)


async def test_system_admins_are_protected(client, world, auth_headers, session_factory, read_toast):
    # Park the system admin inside the customer so it is in scope
    async with session_factory() as db:
        root = await db.get(User, world.sysadmin_id)
        root.customer_id = world.acme_id
        await db.commit()
    headers = await auth_headers(world.sysadmin_id)

    for body in (
        {"intent": "update", "userId": world.sysadmin_id, "name": "Root", "role": "basic-user"},
        {"intent": "reset-password", "userId": world.sysadmin_id, "mode": "auto"},
        {"intent": "set-active", "userId": world.sysadmin_id, "status": "inactive"},
        {"intent": "delete", "userId": world.sysadmin_id, "confirm": "root"},
    ):
        response = await client.post(page(world.acme_id), json=body, headers=headers)
        assert response.status_code == status.HTTP_303_SEE_OTHER, body
        assert read_toast(response)["type"] == "error", body

    async with session_factory() as db:
        assert (await db.get(User, world.sysadmin_id)).active is True


async def test_assign_npis_allows_inactive_providers_and_any_role(client, world, auth_headers, session_factory):
    response = await client.post(
        page(world.acme_id),
        json={"intent": "assign-npis", "userId": world.customer_admin_id, "providerIds": [world.provider_inactive]},
        headers=await auth_headers(world.sysadmin_id),
    )
    assert response.status_code == status.HTTP_303_SEE_OTHER
    async with session_factory() as db:
        rows = (await db.execute(select(UserNpi.provider_id).where(UserNpi.user_id == world.customer_admin_id))).scalars().all()
    assert rows == [world.provider_inactive]


async def test_update_can_deactivate_and_revoke(client, world, auth_headers, session_factory):
    target_headers = await auth_headers(world.ungrouped_user_id)
    response = await client.post(
        page(world.acme_id),
        json={"intent": "update", "userId": world.ungrouped_user_id, "name": "Una", "role": "basic-user", "active": False},
        headers=await auth_headers(world.sysadmin_id),
    )
    assert response.status_code == status.HTTP_303_SEE_OTHER
    assert (await client.get("/users/me", headers=target_headers)).status_code == status.HTTP_401_UNAUTHORIZED
    async with session_factory() as db:
        assert (await db.get(User, world.ungrouped_user_id)).active is False


async def test_second_to_last_customer_admin_can_go_but_not_the_last(client, world, auth_headers, session_factory, read_toast):
    headers = await auth_headers(world.sysadmin_id)
    created = await client.post(
        page(world.acme_id),
        json={"intent": "create", "name": "Carol", "email": "carol@example.com", "username": "carol", "role": "customer-admin"},
        headers=headers,
    )
    assert created.status_code == status.HTTP_303_SEE_OTHER
    async with session_factory() as db:
        carol = (await db.execute(select(User).where(User.username == "carol"))).scalar_one()

    first = await client.post(
        page(world.acme_id), json={"intent": "delete", "userId": world.customer_admin_id, "confirm": "alice"}, headers=headers
    )
    assert read_toast(first)["type"] == "success"

    last = await client.post(
        page(world.acme_id), json={"intent": "delete", "userId": carol.id, "confirm": "carol"}, headers=headers
    )
    assert last.status_code == status.HTTP_303_SEE_OTHER
    assert read_toast(last)["title"] == "Cannot delete last admin"

    async with session_factory() as db:
        assert await db.get(User, world.customer_admin_id) is None
        assert await db.get(User, carol.id) is not None
    actions = await audit_actions(session_factory)
    assert ("USER_DELETE", True) in actions
    assert ("USER_DELETE_BLOCKED", False) in actions


async def test_searches_treat_wildcards_literally(client, world, auth_headers):
    sysadmin = await auth_headers(world.sysadmin_id)
    customers = await client.get("/admin/customers", params={"search": "%"}, headers=sysadmin)
    assert customers.json() == []
    providers = await client.get("/providers", params={"search": "_"}, headers=sysadmin)
    assert providers.json() == []
    users = await client.get(page(world.acme_id), params={"search": "%"}, headers=sysadmin)
    assert users.json()["users"] == []

    acme = await client.get("/admin/customers", params={"search": "acme"}, headers=sysadmin)
    assert [c["name"] for c in acme.json()] == ["Acme Health"]
