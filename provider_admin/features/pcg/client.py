"""
Async client for the PCG HIH wrapper API (provider list and eMDR registration).

Authentication is OAuth2 client credentials. The access token is cached in
the ``api_tokens`` table and refreshed shortly before it expires; a 401
from the API forces one refresh and one retry. There is no other retry
policy: any other failure surfaces as PcgError.
"""
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Optional
import httpx
from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from provider_admin.core import config
from provider_admin.core.database.engine import get_db
from provider_admin.features.pcg.models import ApiToken
from provider_admin.utils import get_logger


log = get_logger(__name__)

TOKEN_PROVIDER = "pcg-fhir"
TOKEN_REFRESH_MARGIN_SECONDS = 120

# Paths relative to PCG_BASE_URL
PROVIDERS_PATH = "/providers"
PROVIDER_UPDATE_PATH = "/provider"
EMDR_REGISTRATION_PATH = "/provider/{provider_id}/emdr"
ELECTRONIC_ONLY_PATH = "/provider/{provider_id}/emdr/electronic-only"
REGISTRATION_STATUS_PATH = "/provider/{provider_id}/registration"


class PcgError(Exception):
    """A PCG call failed. ``status_code`` is None for transport errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _parse_body(response: httpx.Response) -> Any:
    """JSON when possible; PCG sometimes answers errors in plain text."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class PcgClient:
    """
    Thin wrapper over httpx.AsyncClient.

    Usage:
        async with PcgClient(db) as pcg:
            page = await pcg.get_providers(page=1)
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        base_url: Optional[str] = None,
        token_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        scope: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 60.0,
    ):
        self.db = db
        self.token_url = token_url or config.PCG_TOKEN_URL
        self.client_id = client_id if client_id is not None else config.PCG_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else config.PCG_CLIENT_SECRET
        self.scope = scope or config.PCG_SCOPE
        self._http = httpx.AsyncClient(
            base_url=(base_url or config.PCG_BASE_URL).rstrip("/"),
            transport=transport,
            timeout=timeout,
        )

    async def __aenter__(self) -> "PcgClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Token handling
    # ------------------------------------------------------------------

    async def _request_new_token(self) -> tuple[str, datetime]:
        try:
            response = await self._http.post(
                self.token_url,
                data={
                    "grant_type": "client_credentials",
                    "scope": self.scope,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
        except httpx.HTTPError as exc:
            raise PcgError(f"PCG token request failed: {exc}") from exc

        if response.status_code >= 400:
            snippet = response.text[:300]
            log.error(
                "PCG token fetch failed status=%s host=%s scope=%s body=%r",
                response.status_code, httpx.URL(self.token_url).host, self.scope, snippet[:200]
            )
            raise PcgError(f"PCG token fetch failed ({response.status_code}): {snippet}", response.status_code)

        body = response.json()
        expires_in = int(body.get("expires_in", 0))
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in - TOKEN_REFRESH_MARGIN_SECONDS)
        return body["access_token"], expires_at

    async def get_access_token(self, force_refresh: bool = False) -> str:
        """Cached token, or a fresh one when expired or ``force_refresh`` is set."""
        result = await self.db.execute(select(ApiToken).where(ApiToken.provider == TOKEN_PROVIDER))
        cached = result.scalar_one_or_none()
        if cached is not None and not force_refresh and _as_utc(cached.expires_at) > datetime.now(timezone.utc):
            return cached.access_token

        token, expires_at = await self._request_new_token()
        if cached is None:
            self.db.add(ApiToken(provider=TOKEN_PROVIDER, access_token=token, expires_at=expires_at))
        else:
            cached.access_token = token
            cached.expires_at = expires_at
        await self.db.commit()
        log.info("PCG access token refreshed, valid until %s", expires_at.isoformat())
        return token

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _call(self, method: str, path: str, what: str, **kwargs) -> Any:
        token = await self.get_access_token()
        try:
            response = await self._http.request(
                method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs
            )
            if response.status_code == 401:
                token = await self.get_access_token(force_refresh=True)
                response = await self._http.request(
                    method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs
                )
        except httpx.HTTPError as exc:
            raise PcgError(f"PCG {what} failed: {exc}") from exc

        data = _parse_body(response)
        if response.status_code >= 400:
            if response.status_code == 403:
                log.error("PCG API 403 on %s %s; check IP allow-list and scope", method, path)
            if isinstance(data, dict) and data.get("message"):
                raise PcgError(str(data["message"]), response.status_code)
            raise PcgError(
                f"PCG {what} failed ({response.status_code}): {response.text[:500] or 'Unknown error'}",
                response.status_code,
            )
        return data

    async def _call_object(self, method: str, path: str, what: str, **kwargs) -> dict[str, Any]:
        """Like _call, for endpoints that answer a JSON object (or nothing)."""
        data = await self._call(method, path, what, **kwargs)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise PcgError(f"PCG {what} returned an unexpected body: {str(data)[:200]}")
        return data

    async def get_providers(self, page: int = 1, page_size: Optional[int] = None) -> dict[str, Any]:
        """
        One page of the provider list.

        Returns:
            The raw page: ``listResponseModel`` (items) and ``totalPages``
        """
        data = await self._call(
            "GET",
            PROVIDERS_PATH,
            "provider list",
            params={"page": page, "pageSize": page_size or config.PCG_PAGE_SIZE},
        )
        return data if isinstance(data, dict) else {}

    async def get_all_providers(self, page_size: Optional[int] = None) -> list[dict[str, Any]]:
        """Every provider list item, page by page."""
        first = await self.get_providers(page=1, page_size=page_size)
        items = list(first.get("listResponseModel") or [])
        total_pages = max(1, int(first.get("totalPages") or 1))
        for page in range(2, total_pages + 1):
            data = await self.get_providers(page=page, page_size=page_size)
            items.extend(data.get("listResponseModel") or [])
        log.info("Fetched %d providers from PCG across %d pages", len(items), total_pages)
        return items

    async def update_provider(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Create or update a provider's name and address; the answer carries ``provider_id``."""
        return await self._call_object("POST", PROVIDER_UPDATE_PATH, "update provider", json=payload)

    async def set_emdr_registration(self, provider_id: str, register: bool) -> dict[str, Any]:
        return await self._call_object(
            "PUT",
            EMDR_REGISTRATION_PATH.format(provider_id=provider_id),
            "eMDR registration" if register else "eMDR deregistration",
            json={"register_with_emdr": register},
        )

    async def set_electronic_only(self, provider_id: str) -> dict[str, Any]:
        return await self._call_object(
            "PUT",
            ELECTRONIC_ONLY_PATH.format(provider_id=provider_id),
            "electronic-only",
            json={"electronic_only": True},
        )

    async def get_provider_registration(self, provider_id: str) -> dict[str, Any]:
        return await self._call_object(
            "GET",
            REGISTRATION_STATUS_PATH.format(provider_id=provider_id),
            "registration status",
        )


def get_pcg_transport() -> Optional[httpx.AsyncBaseTransport]:
    """Transport for PcgClient; None means real network. Overridden in tests."""
    return None


async def get_pcg_client(
    db: Annotated[AsyncSession, Depends(get_db)],
    transport: Annotated[Optional[httpx.AsyncBaseTransport], Depends(get_pcg_transport)],
) -> AsyncGenerator[PcgClient, None]:
    async with PcgClient(db, transport=transport) as client:
        yield client
