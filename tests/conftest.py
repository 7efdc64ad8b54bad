from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from provider_admin.core import config
from provider_admin.core.database.engine import build_engine, get_db, init_db
from provider_admin.core.rate_limit import limiter
from provider_admin.features.access.roles import RoleName
from provider_admin.features.customers.models import Customer, ProviderGroup
from provider_admin.features.notifications.email import EmailSender, OutboundEmail, get_email_sender
from provider_admin.features.notifications.toast import TOAST_COOKIE
from provider_admin.features.pcg.client import get_pcg_transport
from provider_admin.features.providers.models import Provider, UserNpi
from provider_admin.features.users.auth import hash_password, issue_session_token, session_expiry
from provider_admin.features.users.models import Password, Session, User, get_role
from provider_admin.main import app


PASSWORD = "Str0ng!Passw0rd"


class RecordingEmailSender(EmailSender):
    """Keeps every message instead of sending it; optionally fails."""

    def __init__(self):
        self.sent: list[OutboundEmail] = []
        self.fail = False

    async def send(self, message: OutboundEmail) -> None:
        if self.fail:
            raise ConnectionError("SMTP unavailable")
        self.sent.append(message)


@dataclass
class FakePcg:
    """In-memory stand-in for the PCG API served through httpx.MockTransport."""
    providers: list[dict[str, Any]] = field(default_factory=list)
    registrations: dict[str, dict[str, Any]] = field(default_factory=dict)
    failing_registrations: set[str] = field(default_factory=set)
    page_size: int = 2
    token_requests: int = 0
    reject_next_call: bool = False
    requests: list[httpx.Request] = field(default_factory=list)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/token"):
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": f"tok-{self.token_requests}", "expires_in": 3600})

        if self.reject_next_call:
            self.reject_next_call = False
            return httpx.Response(401, json={"message": "token expired"})

        if path.endswith("/providers"):
            page = int(request.url.params.get("page", "1"))
            start = (page - 1) * self.page_size
            total_pages = max(1, -(-len(self.providers) // self.page_size))
            return httpx.Response(
                200,
                json={"listResponseModel": self.providers[start:start + self.page_size], "totalPages": total_pages},
            )
        if path.endswith("/registration"):
            provider_id = path.split("/")[-2]
            if provider_id in self.failing_registrations:
                return httpx.Response(500, text="upstream exploded")
            return httpx.Response(200, json=self.registrations.get(provider_id, {"provider_id": provider_id}))
        if "/emdr" in path:
            provider_id = path.split("/provider/")[1].split("/")[0]
            return httpx.Response(200, json={"provider_id": provider_id, "status": "accepted"})
        if path.endswith("/provider") and request.method == "POST":
            return httpx.Response(200, json={"provider_id": "pcg-new", "status": "updated"})
        return httpx.Response(404, json={"message": f"no route {path}"})


@dataclass
class World:
    """Ids of the seeded rows."""
    acme_id: str
    other_customer_id: str
    group_1_id: str
    group_2_id: str
    sysadmin_id: str
    customer_admin_id: str
    group_admin_id: str
    grouped_user_id: str
    ungrouped_user_id: str
    other_admin_id: str
    provider_g1_a: str
    provider_g1_b: str
    provider_g2: str
    provider_ungrouped: str
    provider_inactive: str
    provider_other_customer: str


@pytest.fixture(autouse=True)
def _disable_rate_limit():
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def fake_pcg():
    return FakePcg()


@pytest.fixture
async def client(session_factory, email_sender, fake_pcg):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_email_sender] = lambda: email_sender
    app.dependency_overrides[get_pcg_transport] = lambda: httpx.MockTransport(fake_pcg.handler)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _add_user(
    db: AsyncSession,
    username: str,
    role: RoleName,
    customer_id: Optional[str],
    provider_group_id: Optional[str] = None,
    password_hash: Optional[str] = None,
) -> User:
    user = User(
        username=username,
        email=f"{username}@example.com",
        name=username.title(),
        customer_id=customer_id,
        provider_group_id=provider_group_id,
        roles=[await get_role(db, role)],
    )
    db.add(user)
    await db.flush()
    db.add(Password(user_id=user.id, hash=password_hash or hash_password(PASSWORD)))
    return user


@pytest.fixture
async def world(session_factory) -> World:
    async with session_factory() as db:
        acme = Customer(name="Acme Health")
        other = Customer(name="Other Clinic")
        db.add_all([acme, other])
        await db.flush()

        group_1 = ProviderGroup(customer_id=acme.id, name="North")
        group_2 = ProviderGroup(customer_id=acme.id, name="South")
        db.add_all([group_1, group_2])
        await db.flush()

        providers = {
            "g1_a": Provider(npi="1000000001", name="Dr North A", customer_id=acme.id, provider_group_id=group_1.id),
            "g1_b": Provider(npi="1000000002", name="Dr North B", customer_id=acme.id, provider_group_id=group_1.id),
            "g2": Provider(npi="1000000003", name="Dr South", customer_id=acme.id, provider_group_id=group_2.id),
            "ungrouped": Provider(npi="1000000004", name="Dr Solo", customer_id=acme.id),
            "inactive": Provider(npi="1000000005", name="Dr Gone", customer_id=acme.id, active=False),
            "other": Provider(npi="2000000001", name="Dr Elsewhere", customer_id=other.id),
        }
        db.add_all(providers.values())

        # One hash for everyone keeps bcrypt out of the hot path
        shared_hash = hash_password(PASSWORD)
        sysadmin = await _add_user(db, "root", RoleName.SYSTEM_ADMIN, None, password_hash=shared_hash)
        customer_admin = await _add_user(db, "alice", RoleName.CUSTOMER_ADMIN, acme.id, password_hash=shared_hash)
        group_admin = await _add_user(
            db, "gary", RoleName.PROVIDER_GROUP_ADMIN, acme.id, group_1.id, password_hash=shared_hash
        )
        grouped_user = await _add_user(db, "bob", RoleName.BASIC_USER, acme.id, group_1.id, password_hash=shared_hash)
        ungrouped_user = await _add_user(db, "una", RoleName.BASIC_USER, acme.id, password_hash=shared_hash)
        other_admin = await _add_user(db, "olga", RoleName.CUSTOMER_ADMIN, other.id, password_hash=shared_hash)
        await db.commit()

        return World(
            acme_id=acme.id,
            other_customer_id=other.id,
            group_1_id=group_1.id,
            group_2_id=group_2.id,
            sysadmin_id=sysadmin.id,
            customer_admin_id=customer_admin.id,
            group_admin_id=group_admin.id,
            grouped_user_id=grouped_user.id,
            ungrouped_user_id=ungrouped_user.id,
            other_admin_id=other_admin.id,
            provider_g1_a=providers["g1_a"].id,
            provider_g1_b=providers["g1_b"].id,
            provider_g2=providers["g2"].id,
            provider_ungrouped=providers["ungrouped"].id,
            provider_inactive=providers["inactive"].id,
            provider_other_customer=providers["other"].id,
        )


@pytest.fixture
def auth_headers(session_factory):
    """Open a session for a user and return the bearer header."""

    async def _headers(user_id: str) -> dict[str, str]:
        async with session_factory() as db:
            session = Session(user_id=user_id, expiration_date=session_expiry())
            db.add(session)
            await db.commit()
            token = issue_session_token(session.id, user_id, session.expiration_date)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def assign(session_factory):
    async def _assign(user_id: str, *provider_ids: str) -> None:
        async with session_factory() as db:
            db.add_all([UserNpi(user_id=user_id, provider_id=pid) for pid in provider_ids])
            await db.commit()

    return _assign


@pytest.fixture
def read_toast():
    """Decode the toast cookie set by a redirect."""

    def _read(response: httpx.Response) -> dict[str, Any]:
        token = response.cookies.get(TOAST_COOKIE)
        assert token, "response carries no toast cookie"
        return jwt.decode(token, config.SESSION_SECRET, algorithms=["HS256"])["toast"]

    return _read


@pytest.fixture
def password() -> str:
    """Password of every seeded user."""
    return PASSWORD
