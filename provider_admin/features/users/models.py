"""
User, role, credential and session models with ULID primary keys.
"""
from datetime import datetime
from sqlalchemy import String, Boolean, Integer, ForeignKey, Table, Column, DateTime, LargeBinary, Text, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column, relationship

from provider_admin.core.database.base import Base, TimestampMixin, generate_ulid
from provider_admin.features.access.roles import RoleName, to_role_set


# User-Role relationship; replaced wholesale whenever a user's role changes
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)


class Role(Base, TimestampMixin):
    """
    One row per RoleName. Seeded at startup; never created through the API.
    """
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r})>"


class User(Base, TimestampMixin):
    """
    User model representing people who sign in.

    Email and username are stored lowercased and are globally unique.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    username: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Tenant linkage
    customer_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    provider_group_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("provider_groups.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Status flags
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    must_change_password: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    password_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Login lockout
    failed_login_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    roles: Mapped[list["Role"]] = relationship(
        "Role",
        secondary=user_roles,
        lazy="selectin"
    )

    @property
    def role_set(self) -> frozenset[RoleName]:
        return to_role_set(r.name for r in self.roles)

    @property
    def display_name(self) -> str:
        return self.name or self.username

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username!r})>"


class Password(Base, TimestampMixin):
    """Current bcrypt hash for a user (one row per user)."""
    __tablename__ = "passwords"

    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True
    )
    hash: Mapped[str] = mapped_column(String(255), nullable=False)


class PasswordHistory(Base, TimestampMixin):
    """Previous hashes, checked to block password reuse."""
    __tablename__ = "password_history"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    hash: Mapped[str] = mapped_column(String(255), nullable=False)


class Session(Base, TimestampMixin):
    """
    Server-side login session. Deleting the row revokes the bearer token
    that references it.
    """
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id"),
        nullable=False,
        index=True
    )
    expiration_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<Session(id={self.id}, user_id={self.user_id})>"


class UserImage(Base, TimestampMixin):
    """Profile image blob."""
    __tablename__ = "user_images"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False
    )
    content_type: Mapped[str] = mapped_column(String(100), nullable=False)
    alt_text: Mapped[str | None] = mapped_column(String(255), nullable=True)
    blob: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)


ROLE_DESCRIPTIONS: dict[RoleName, str] = {
    RoleName.SYSTEM_ADMIN: "Manages every customer and the PCG provider sync",
    RoleName.CUSTOMER_ADMIN: "Manages users, groups and NPIs for one customer",
    RoleName.PROVIDER_GROUP_ADMIN: "Manages users and NPIs within one provider group",
    RoleName.BASIC_USER: "Works with the NPIs assigned to them",
}


async def seed_roles(db: AsyncSession) -> None:
    """Insert any missing RoleName rows."""
    result = await db.execute(select(Role.name))
    existing = set(result.scalars().all())
    for role in RoleName:
        if role.value not in existing:
            db.add(Role(name=role.value, description=ROLE_DESCRIPTIONS[role]))
    await db.flush()


async def get_role(db: AsyncSession, role: RoleName) -> Role:
    result = await db.execute(select(Role).where(Role.name == role.value))
    return result.scalar_one()
