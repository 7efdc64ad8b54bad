"""
Provider (NPI) models, user NPI assignments and PCG registration snapshots.
"""
from datetime import datetime
from typing import Any
from sqlalchemy import String, Boolean, ForeignKey, DateTime, JSON, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from provider_admin.core.database.base import Base, TimestampMixin, generate_ulid


class Provider(Base, TimestampMixin):
    """
    Healthcare provider identified by a unique 10-digit NPI.

    Attributes:
        id: ULID primary key
        npi: National Provider Identifier (unique)
        customer_id: Owning customer
        provider_group_id: Optional provider group within that customer
        pcg_provider_id: Identifier assigned by PCG once the provider is registered there
        pcg_list_snapshot: Last row seen for this NPI in the PCG provider list
        pcg_update_response: Last response from a PCG provider update or eMDR call
    """
    __tablename__ = "providers"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    npi: Mapped[str] = mapped_column(String(10), unique=True, nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    customer_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    provider_group_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("provider_groups.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Mailing address
    provider_street: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_street2: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    provider_state: Mapped[str | None] = mapped_column(String(2), nullable=True)
    provider_zip: Mapped[str | None] = mapped_column(String(10), nullable=True)

    # PCG linkage
    pcg_provider_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    pcg_list_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    pcg_list_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pcg_update_response: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    pcg_update_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    registration_status: Mapped["ProviderRegistrationStatus | None"] = relationship(
        "ProviderRegistrationStatus",
        uselist=False,
        lazy="selectin"
    )

    __table_args__ = (
        Index("ix_providers_customer_group", "customer_id", "provider_group_id"),
    )

    def __repr__(self) -> str:
        return f"<Provider(id={self.id}, npi={self.npi!r})>"


class UserNpi(Base, TimestampMixin):
    """
    A user's assignment to a provider.

    A user in a provider group may only hold providers of that group; a user
    without a group may only hold providers that have no group.
    """
    __tablename__ = "user_npis"
    __table_args__ = (
        UniqueConstraint("user_id", "provider_id", name="uq_user_npis_user_provider"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    provider_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("providers.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    def __repr__(self) -> str:
        return f"<UserNpi(user_id={self.user_id}, provider_id={self.provider_id})>"


class ProviderRegistrationStatus(Base, TimestampMixin):
    """
    Latest eMDR registration details fetched from PCG for one provider.
    Written only by the PCG sync; read for display.
    """
    __tablename__ = "provider_registration_statuses"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    provider_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("providers.id", ondelete="CASCADE"),
        unique=True,
        nullable=False
    )
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    provider_npi: Mapped[str] = mapped_column(String(10), nullable=False)
    pcg_provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reg_status: Mapped[str | None] = mapped_column(String(100), nullable=True)
    stage: Mapped[str | None] = mapped_column(String(255), nullable=True)
    submission_status: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str | None] = mapped_column(String(100), nullable=True)
    call_error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    call_error_description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    provider_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_street: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_street2: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    provider_state: Mapped[str | None] = mapped_column(String(2), nullable=True)
    provider_zip: Mapped[str | None] = mapped_column(String(10), nullable=True)
    transaction_id_list: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    status_changes: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    errors: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    error_list: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<ProviderRegistrationStatus(provider_id={self.provider_id}, reg_status={self.reg_status!r})>"
