from datetime import datetime, timedelta, timezone
from fastapi import status
from sqlalchemy import select

from provider_admin.core import config
from provider_admin.features.users.auth import lockout_until
from provider_admin.features.users.models import PasswordHistory, Session, User


NEW_PASSWORD = "N3w!Password99"


async def login(client, username, password):
    return await client.post("/auth/login", json={"username": username, "password": password})


async def test_login_is_case_insensitive_and_returns_a_working_token(client, world, password):
    response = await login(client, "ALICE", password)
    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["must_change_password"] is False

    me = await client.get("/users/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.status_code == status.HTTP_200_OK
    profile = me.json()
    assert profile["username"] == "alice"
    assert profile["roles"] == ["customer-admin"]
    assert profile["customer_name"] == "Acme Health"


async def test_login_accepts_email(client, world, password):
    response = await login(client, "bob@example.com", password)
    assert response.status_code == status.HTTP_200_OK


async def test_wrong_password_and_unknown_user_look_the_same(client, world, password):
    wrong = await login(client, "alice", password + "x")
    unknown = await login(client, "nobody", password)
    assert wrong.status_code == unknown.status_code == status.HTTP_401_UNAUTHORIZED
    assert wrong.json() == unknown.json()


async def test_deactivated_user_cannot_log_in(client, world, session_factory, password):
    async with session_factory() as db:
        user = await db.get(User, world.grouped_user_id)
        user.active = False
        await db.commit()

    response = await login(client, "bob", password)
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


async def test_missing_or_garbage_token_is_rejected(client, world):
    assert (await client.get("/users/me")).status_code == status.HTTP_401_UNAUTHORIZED
    response = await client.get("/users/me", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


async def test_logout_revokes_the_session(client, world, auth_headers):
    headers = await auth_headers(world.customer_admin_id)
    assert (await client.post("/auth/logout", headers=headers)).status_code == status.HTTP_204_NO_CONTENT
    assert (await client.get("/users/me", headers=headers)).status_code == status.HTTP_401_UNAUTHORIZED


async def test_change_password_requires_the_current_one(client, world, auth_headers):
    headers = await auth_headers(world.grouped_user_id)
    response = await client.post(
        "/auth/change-password",
        json={"current_password": "wrong", "password": NEW_PASSWORD},
        headers=headers,
    )
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "current_password" in response.json()


async def test_change_password_enforces_policy_and_reuse(client, world, auth_headers, password):
    headers = await auth_headers(world.grouped_user_id)

    weak = await client.post(
        "/auth/change-password", json={"current_password": password, "password": "short"}, headers=headers
    )
    assert weak.status_code == status.HTTP_400_BAD_REQUEST
    assert "password" in weak.json()

    same = await client.post(
        "/auth/change-password", json={"current_password": password, "password": password}, headers=headers
    )
    assert same.status_code == status.HTTP_400_BAD_REQUEST
    assert "used recently" in same.json()["password"]


async def test_change_password_revokes_other_sessions(client, world, auth_headers, session_factory, password):
    current = await auth_headers(world.grouped_user_id)
    other = await auth_headers(world.grouped_user_id)

    response = await client.post(
        "/auth/change-password",
        json={"current_password": password, "password": NEW_PASSWORD},
        headers=current,
    )
    assert response.status_code == status.HTTP_204_NO_CONTENT

    assert (await client.get("/users/me", headers=current)).status_code == status.HTTP_200_OK
    assert (await client.get("/users/me", headers=other)).status_code == status.HTTP_401_UNAUTHORIZED

    async with session_factory() as db:
        user = await db.get(User, world.grouped_user_id)
        assert user.must_change_password is False
        assert user.password_changed_at is not None
        history = (await db.execute(select(PasswordHistory).where(PasswordHistory.user_id == user.id))).scalars().all()
        assert len(history) == 1
        sessions = (await db.execute(select(Session).where(Session.user_id == user.id))).scalars().all()
        assert len(sessions) == 1

    # The old password is now history and cannot come back
    back = await client.post(
        "/auth/change-password",
        json={"current_password": NEW_PASSWORD, "password": password},
        headers=current,
    )
    assert back.status_code == status.HTTP_400_BAD_REQUEST
    assert (await login(client, "bob", NEW_PASSWORD)).status_code == status.HTTP_200_OK


async def test_my_npis_lists_only_assignments(client, world, auth_headers, assign):
    await assign(world.grouped_user_id, world.provider_g1_a)
    headers = await auth_headers(world.grouped_user_id)

    mine = await client.get("/my-npis", headers=headers)
    assert [p["npi"] for p in mine.json()] == ["1000000001"]

    visible = await client.get("/providers", headers=headers)
    assert [p["npi"] for p in visible.json()] == ["1000000001"]


async def test_provider_list_follows_scope(client, world, auth_headers):
    group_admin = await client.get("/providers", headers=await auth_headers(world.group_admin_id))
    assert {p["npi"] for p in group_admin.json()} == {"1000000001", "1000000002"}

    customer_admin = await client.get("/providers", headers=await auth_headers(world.customer_admin_id))
    assert "2000000001" not in {p["npi"] for p in customer_admin.json()}
    assert len(customer_admin.json()) == 5

    sysadmin = await client.get("/providers", headers=await auth_headers(world.sysadmin_id))
    assert len(sysadmin.json()) == 6


async def test_pending_password_change_blocks_everything_but_the_change(client, world, auth_headers, session_factory, password):
    async with session_factory() as db:
        user = await db.get(User, world.customer_admin_id)
        user.must_change_password = True
        await db.commit()
    headers = await auth_headers(world.customer_admin_id)

    blocked = await client.get("/providers", headers=headers)
    assert blocked.status_code == status.HTTP_403_FORBIDDEN
    assert "/auth/change-password" in blocked.json()["detail"]
    assert (await client.get("/customer/users", headers=headers)).status_code == status.HTTP_403_FORBIDDEN

    me = await client.get("/users/me", headers=headers)
    assert me.status_code == status.HTTP_200_OK
    assert me.json()["must_change_password"] is True

    changed = await client.post(
        "/auth/change-password", json={"current_password": password, "password": NEW_PASSWORD}, headers=headers
    )
    assert changed.status_code == status.HTTP_204_NO_CONTENT
    assert (await client.get("/providers", headers=headers)).status_code == status.HTTP_200_OK


async def test_repeated_failures_lock_the_account(client, world, session_factory, password, monkeypatch):
    monkeypatch.setattr(config, "LOCKOUT_THRESHOLD", 2)

    for _ in range(2):
        assert (await login(client, "bob", "Wr0ng!Password")).status_code == status.HTTP_401_UNAUTHORIZED

    locked = await login(client, "bob", password)
    assert locked.status_code == status.HTTP_401_UNAUTHORIZED
    # Same answer as a plain wrong password
    assert locked.json() == {"detail": "Invalid username or password"}

    async with session_factory() as db:
        user = await db.get(User, world.grouped_user_id)
        assert user.failed_login_count == 2
        assert user.locked_until is not None
        user.locked_until = datetime.now(timezone.utc) - timedelta(seconds=1)
        await db.commit()

    assert (await login(client, "bob", password)).status_code == status.HTTP_200_OK
    async with session_factory() as db:
        user = await db.get(User, world.grouped_user_id)
        assert (user.failed_login_count, user.locked_until) == (0, None)


async def test_a_success_resets_the_failure_count(client, world, session_factory, password, monkeypatch):
    monkeypatch.setattr(config, "LOCKOUT_THRESHOLD", 2)

    await login(client, "bob", "Wr0ng!Password")
    assert (await login(client, "bob", password)).status_code == status.HTTP_200_OK
    await login(client, "bob", "Wr0ng!Password")
    assert (await login(client, "bob", password)).status_code == status.HTTP_200_OK


def test_lockout_cooldown_doubles_and_is_capped(monkeypatch):
    monkeypatch.setattr(config, "LOCKOUT_THRESHOLD", 3)
    monkeypatch.setattr(config, "LOCKOUT_BASE_COOLDOWN_SECONDS", 60)
    monkeypatch.setattr(config, "LOCKOUT_MAX_COOLDOWN_SECONDS", 200)
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    assert lockout_until(2, now) is None
    assert lockout_until(3, now) == now + timedelta(seconds=60)
    assert lockout_until(6, now) == now + timedelta(seconds=120)
    assert lockout_until(9, now) == now + timedelta(seconds=200)

    monkeypatch.setattr(config, "LOCKOUT_ENABLED", False)
    assert lockout_until(9, now) is None
