"""
Cached OAuth tokens for outbound APIs.
"""
from datetime import datetime
from sqlalchemy import String, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from provider_admin.core.database.base import Base, TimestampMixin, generate_ulid


class ApiToken(Base, TimestampMixin):
    """
    Latest access token per upstream API, keyed by ``provider``.

    ``expires_at`` is already pulled forward by the refresh margin, so a row
    is usable while ``expires_at`` is in the future.
    """
    __tablename__ = "api_tokens"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    provider: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<ApiToken(provider={self.provider!r}, expires_at={self.expires_at})>"
