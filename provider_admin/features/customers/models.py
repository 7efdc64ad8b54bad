"""
Customer (tenant) and provider group models.

A customer is the tenant root. Provider groups subdivide a customer's
providers and users.
"""
from sqlalchemy import String, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from provider_admin.core.database.base import Base, TimestampMixin, generate_ulid

# Providers pulled from the PCG list that no customer has claimed yet
SYSTEM_CUSTOMER_NAME = "System"


class Customer(Base, TimestampMixin):
    """
    Tenant root. Owns provider groups, providers and users.
    """
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    base_npi: Mapped[str | None] = mapped_column(String(10), nullable=True)

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, name={self.name!r})>"


class ProviderGroup(Base, TimestampMixin):
    """
    Subdivision of a customer. Providers and users may belong to at most one group.
    """
    __tablename__ = "provider_groups"
    __table_args__ = (
        UniqueConstraint("customer_id", "name", name="uq_provider_groups_customer_name"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    customer_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<ProviderGroup(id={self.id}, name={self.name!r}, customer_id={self.customer_id})>"
