import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp

from config import config

DEFAULT_BASE_URL = "https://api.coingecko.com/api/v3"


class CoinGeckoAPIError(Exception):
    def __init__(self, status: int, body: str, error: Optional[str] = None):
        self.status = status
        self.body = body
        self.error = error
        text = f"CoinGecko API error (status={status}, error={error})"
        super().__init__(text)

    @property
    def rate_limited(self) -> bool:
        return self.status == 429


def _usable_key(value: Optional[str]) -> Optional[str]:
    # Unresolved ${VAR} placeholders come back verbatim from the config loader.
    if not value or (value.startswith("${") and value.endswith("}")):
        return None
    return value


class CoinGeckoRESTClient:
    """Thin aiohttp wrapper over the CoinGecko public REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ):
        provider = config.get("provider", {}) or {}
        self.base_url = (base_url or provider.get("base_url") or DEFAULT_BASE_URL).rstrip("/")
        self.api_key = _usable_key(api_key if api_key is not None else provider.get("api_key"))
        self.timeout_s = float(timeout_s or provider.get("request_timeout_s") or 15)
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s)
                )
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        session = await self._get_session()
        headers: Dict[str, str] = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key

        url = f"{self.base_url}{path}"
        query = {key: _format_param(value) for key, value in (params or {}).items()}

        async with session.get(url, params=query, headers=headers) as resp:
            text = await resp.text()
            payload: Any
            try:
                payload = json.loads(text) if text else None
            except ValueError:
                payload = text

            if resp.status >= 400:
                error = None
                if isinstance(payload, dict):
                    error = payload.get("error")
                    status = payload.get("status")
                    if error is None and isinstance(status, dict):
                        error = status.get("error_message")
                raise CoinGeckoAPIError(resp.status, text, error)

            return payload


def _format_param(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return str(value)
