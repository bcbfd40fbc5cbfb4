"""User directory: RFID tag -> identity and authorized doors. Owned by the admin backend."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from cachetools import TTLCache
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

_TRANSIENT_ERRORS = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.ReadError,
    httpx.WriteError,
)


def _is_transient(exc: BaseException) -> bool:
    """Transport failures and 5xx responses. 4xx (bad token, bad request) will not get better."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, _TRANSIENT_ERRORS)


# Default retry: 5 attempts, exponential backoff 2-30s, retry on transient errors
DEFAULT_RETRY = retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=2, max=30),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


@dataclass(frozen=True)
class Identity:
    """Who a tag belongs to. Empty doors means no per-door restriction."""

    uid: str
    username: str = ""
    doors: tuple[str, ...] = ()

    def may_open(self, unit_id: str, device_name: str | None = None) -> bool:
        if not self.doors:
            return True
        return unit_id in self.doors or (device_name is not None and device_name in self.doors)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Identity:
        doors = data.get("doors") or ()
        if isinstance(doors, str):
            doors = (doors,)
        return cls(
            uid=str(data["uid"]),
            username=str(data.get("username") or ""),
            doors=tuple(str(d) for d in doors),
        )


class UserDirectory(Protocol):
    """Anything that can resolve a tag."""

    async def lookup(self, uid: str) -> Identity | None: ...


class AccessPolicy:
    """Decides whether the controller's 'access' string permits an unlock."""

    def __init__(self, allowed: Iterable[str] = ("Always",)) -> None:
        self._allowed = frozenset(allowed)

    def __call__(self, access: str) -> bool:
        return access in self._allowed

    @property
    def allowed(self) -> frozenset[str]:
        return self._allowed


class StaticUserDirectory:
    """Directory from config `users:` entries."""

    def __init__(self, identities: Iterable[Identity] = ()) -> None:
        self._by_uid = {i.uid: i for i in identities}

    @classmethod
    def from_config(cls, entries: list[dict[str, Any]]) -> StaticUserDirectory:
        return cls(Identity.from_dict(e) for e in entries if isinstance(e, dict) and e.get("uid"))

    def __len__(self) -> int:
        return len(self._by_uid)

    async def lookup(self, uid: str) -> Identity | None:
        return self._by_uid.get(uid)


class DirectoryClient:
    """Async client for the admin backend's tag endpoint. Uses tenacity for retries.

    GET /api/rfid/{uid}
      200 -> { uid, username, doors: [unit ids or device names] }
            or wrapped { ok: true, user: {...} }
      404 -> unknown tag
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        h: dict[str, str] = {"Accept": "application/json"}
        if self._token:
            h["Authorization"] = f"Bearer {self._token}"
        return h

    def _extract(self, data: Any) -> dict[str, Any] | None:
        """Extract user dict from response, handling both wrapped and raw formats."""
        if not isinstance(data, dict):
            return None
        if "ok" in data:
            return data.get("user") if data.get("ok") else None
        return data

    @DEFAULT_RETRY
    async def get_user(self, uid: str) -> dict[str, Any] | None:
        """Resolve tag uid -> user record. Returns None if not found."""
        url = f"{self._base_url}/api/rfid/{uid}"
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.get(url, headers=self._headers())
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return self._extract(resp.json())


class CachedUserDirectory:
    """Directory backed by DirectoryClient with a TTL cache."""

    def __init__(
        self,
        client: DirectoryClient,
        *,
        maxsize: int = 1024,
        ttl: int = 3600,
    ) -> None:
        self._client = client
        self._cache: TTLCache[str, Identity | None] = TTLCache(maxsize=maxsize, ttl=float(ttl))

    def invalidate(self, uid: str | None = None) -> None:
        if uid is None:
            self._cache.clear()
        else:
            self._cache.pop(uid, None)

    async def lookup(self, uid: str) -> Identity | None:
        try:
            return self._cache[uid]
        except KeyError:
            pass
        data = await self._client.get_user(uid)
        identity: Identity | None = None
        if data:
            try:
                identity = Identity.from_dict({"uid": uid, **data})
            except (KeyError, TypeError) as exc:
                logger.warning("Directory returned unusable record for {}: {}", uid, exc)
        self._cache[uid] = identity
        return identity
