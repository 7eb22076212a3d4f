from __future__ import annotations

import asyncio
import time
from typing import Any, Protocol, runtime_checkable

import aiohttp
from loguru import logger

# ─── Errors ──────────────────────────────────────────────────────────


class HttpError(Exception):
    """Non-2xx response, or a transport failure (``status == 0``)."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(status, body)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        return f"HTTP {self.status}: {self.body}"


# ─── Auth ────────────────────────────────────────────────────────────


@runtime_checkable
class Auth(Protocol):
    async def headers(self) -> dict[str, str]: ...
    async def on_401(self) -> None: ...


class BearerAuth:
    def __init__(self, token: str) -> None:
        self._token = token.removeprefix("Bearer ").strip()

    async def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/json",
        }

    async def on_401(self) -> None:
        pass


IAM_APIKEY_GRANT = "urn:ibm:params:oauth:grant-type:apikey"


class IAMAuth:
    """Exchanges an IBM Cloud API key for a bearer token and caches it."""

    def __init__(self, api_key: str, auth_url: str, *, timeout: float = 30) -> None:
        self._api_key = api_key
        self._token_url = f"{auth_url.rstrip('/')}/identity/token"
        self._timeout = timeout
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    async def _fetch_token(self) -> str:
        log = logger.bind(component="http")
        log.debug("Fetching IAM token")
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session, session.post(
            self._token_url,
            data={"grant_type": IAM_APIKEY_GRANT, "apikey": self._api_key},
            headers={"Accept": "application/json"},
        ) as resp:
            if resp.status >= 400:
                body = await resp.text()
                log.error(
                    "IAM token fetch failed: status={status} body={body}",
                    status=resp.status, body=body[:200],
                )
                raise HttpError(status=resp.status, body=body)
            data = await resp.json()
            # Refresh a minute early so long passes do not race expiry
            self._expires_at = time.monotonic() + float(data.get("expires_in", 3600)) - 60
            return data["access_token"]

    async def headers(self) -> dict[str, str]:
        async with self._lock:
            if self._token is None or time.monotonic() >= self._expires_at:
                self._token = await self._fetch_token()
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/json",
        }

    async def on_401(self) -> None:
        async with self._lock:
            self._token = None


# ─── Client ──────────────────────────────────────────────────────────


class HttpClient:
    def __init__(
        self,
        base_url: str,
        auth: Auth | None = None,
        *,
        timeout: float = 30,
        default_headers: dict[str, str] | None = None,
        default_params: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = auth
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._default_headers = default_headers or {}
        self._default_params = default_params or {}
        self._session: aiohttp.ClientSession | None = None
        self._log = logger.bind(component="http")

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _build_headers(self) -> dict[str, str]:
        headers = dict(self._default_headers)
        if self._auth:
            headers.update(await self._auth.headers())
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> tuple[int, Any]:
        session = await self._ensure_session()
        headers = await self._build_headers()
        query = {**self._default_params, **(params or {})}
        self._log.debug("{method} {path}", method=method, path=path)

        try:
            async with session.request(
                method, self._url(path), headers=headers, json=json, params=query
            ) as resp:
                if resp.status == 401 and self._auth:
                    self._log.debug("401 received, refreshing auth and retrying")
                    await self._auth.on_401()
                    retry_headers = await self._build_headers()
                    async with session.request(
                        method,
                        self._url(path),
                        headers=retry_headers,
                        json=json,
                        params=query,
                    ) as retry_resp:
                        return await self._parse(retry_resp)

                return await self._parse(resp)
        except aiohttp.ClientResponseError as e:
            raise HttpError(status=e.status, body=e.message) from e
        except aiohttp.ClientError as e:
            raise HttpError(status=0, body=str(e)) from e
        except TimeoutError as e:
            raise HttpError(status=0, body=f"timed out after {self._timeout.total}s") from e

    async def _parse(self, resp: aiohttp.ClientResponse) -> tuple[int, Any]:
        if resp.status >= 400:
            body = await resp.text()
            self._log.warning(
                "HTTP {status} from {url}: {body}",
                status=resp.status, url=str(resp.url), body=body[:500],
            )
            raise HttpError(status=resp.status, body=body)
        body = await resp.read()
        return resp.status, (await resp.json(content_type=None) if body else None)

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        _, data = await self._send(method, path, json=json, params=params)
        return data

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def close(self) -> None:
        if self._session and not self._session.closed:
            self._log.debug("Closing HTTP session")
            await self._session.close()

    async def __aenter__(self) -> HttpClient:
        await self._ensure_session()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()
