"""
IDEX panel HTTP client.

The panel authenticates with a JSON login that answers with a list of
cookies; every later request replays them in a Cookie header. That detail
stays inside this module; callers only hold an opaque SessionToken.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from app.services.idex_errors import (
    AuthFailed,
    AuthRejected,
    FetchFailed,
    MalformedResponse,
    RateLimited,
)
from app.services.idex_types import RawTransaction

logger = logging.getLogger(__name__)

_JSON_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}


@dataclass(frozen=True)
class SessionToken:
    """Authenticated panel session. Opaque outside this module."""
    login: str
    _value: str = field(repr=False)


class PanelClient(Protocol):
    async def authenticate(self, login: str, password: str) -> SessionToken: ...

    async def fetch_transaction_page(self, session: SessionToken, page: int) -> list[RawTransaction]: ...


def _cookie_header(cookies: Any) -> str:
    if not isinstance(cookies, list) or not cookies:
        raise MalformedResponse("set_cookie is missing or empty")
    pairs = []
    for cookie in cookies:
        if not isinstance(cookie, dict) or "name" not in cookie:
            raise MalformedResponse("set_cookie entry has no name")
        pairs.append(f"{cookie['name']}={cookie.get('value', '')}")
    return "; ".join(pairs)


def _extract_page(body: Any) -> list[RawTransaction]:
    if not isinstance(body, dict):
        raise MalformedResponse(f"expected an object, got {type(body).__name__}")
    data = body.get("data")
    if not isinstance(data, list):
        raise MalformedResponse(f"'data' is {type(data).__name__}, expected a list")
    return data


class IdexClient:
    """Async client for panel.gate.cx. Use as ``async with IdexClient(...) as client``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "IdexClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ─── Auth ─────────────────────────────────────────────────────────────────

    async def authenticate(self, login: str, password: str) -> SessionToken:
        logger.info("Logging in to IDEX panel as %s", login)
        try:
            resp = await self._http.post(
                "/auth",
                json={"login": login, "password": password},
                headers=_JSON_HEADERS,
            )
        except httpx.HTTPError as exc:
            raise AuthFailed(f"login request for {login} failed: {exc}") from exc

        if resp.status_code == 409:
            raise AuthRejected(
                f"login rejected for {login} (409 Conflict): credentials invalid or account locked"
            )
        if resp.status_code == 429:
            raise RateLimited(f"login for {login} rate limited (429)")
        if resp.is_error:
            raise AuthFailed(f"login for {login} failed with HTTP {resp.status_code}")

        try:
            cookie = _cookie_header(resp.json().get("set_cookie"))
        except (ValueError, AttributeError, MalformedResponse) as exc:
            raise AuthFailed(f"login response for {login} carried no session: {exc}") from exc

        logger.info("Logged in to IDEX panel as %s", login)
        return SessionToken(login=login, _value=cookie)

    # ─── Transactions ─────────────────────────────────────────────────────────

    async def fetch_transaction_page(self, session: SessionToken, page: int) -> list[RawTransaction]:
        """Return one page of transactions; an empty list means past the last page."""
        try:
            resp = await self._http.get(
                "/transactions/json",
                params={"page": page},
                headers={"Cookie": session._value},
            )
        except httpx.HTTPError as exc:
            raise FetchFailed(f"page {page} for {session.login} failed: {exc}") from exc

        if resp.status_code == 429:
            raise RateLimited(f"page {page} for {session.login} rate limited (429)")
        if resp.is_error:
            raise FetchFailed(f"page {page} for {session.login} failed with HTTP {resp.status_code}")

        try:
            rows = _extract_page(resp.json())
        except (ValueError, MalformedResponse) as exc:
            # Treated as end of data so pagination terminates; may hide real rows
            logger.warning(
                "MALFORMED page %d for %s treated as empty, possible under-ingestion: %s",
                page, session.login, exc,
            )
            return []

        logger.info("Fetched %d transactions from page %d for %s", len(rows), page, session.login)
        return rows
