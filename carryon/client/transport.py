"""Outbound side of baggage propagation over HTTP.

For every call the transport derives a child of the active exchange's
request context, encodes it into the request headers, and on response
decodes the downstream context and merges it back into the exchange.
Calls that fail before a response arrives (connect errors, timeouts,
cancellation) merge nothing.
"""

from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass

import httpx

from carryon.shared.codec import Codec, build_codec
from carryon.shared.config import PropagationConfig
from carryon.shared.context import Context
from carryon.shared.exchange import Exchange, current_exchange
from carryon.shared.utils import set_log_level, setup_logging

logger = setup_logging("carryon.client")


@dataclass
class CallResult:
    """A downstream response plus the baggage it carried back."""

    response: httpx.Response
    context: Context

    @property
    def status_code(self) -> int:
        return self.response.status_code

    def json(self):
        return self.response.json()


class Transport(abc.ABC):
    """Abstract baggage-aware transport for reaching other services."""

    def __init__(self, codec: Codec | None = None, config: PropagationConfig | None = None) -> None:
        if config is not None:
            set_log_level(config.log_level)
        self.config = config or PropagationConfig()
        self.codec = codec or build_codec(self.config)
        self._urls: dict[str, str] = {}

    def register(self, service: str, url: str) -> None:
        self._urls[service] = url.rstrip("/")

    def get_url(self, service: str) -> str | None:
        return self._urls.get(service)

    def _resolve_url(self, service: str, path: str) -> str:
        url = self._urls.get(service)
        if not url:
            raise LookupError(f"Service '{service}' not registered in transport")
        return f"{url}{path}"

    def _resolve_exchange(self, exchange: Exchange | None) -> Exchange | None:
        return exchange if exchange is not None else current_exchange.get()

    def _resolve_headers(
        self, exchange: Exchange | None, headers: dict[str, str] | None,
    ) -> dict[str, str]:
        """Return *headers* plus the baggage of a freshly derived child context."""
        resolved = dict(headers or {})
        if exchange is not None:
            resolved.update(exchange.outbound_headers(self.codec))
        return resolved

    def _complete(
        self, exchange: Exchange | None, response: httpx.Response,
    ) -> CallResult:
        """Decode the response baggage and merge it back into the exchange."""
        downstream = self.codec.decode(response.headers)
        if exchange is not None:
            exchange.merge_back(downstream)
        return CallResult(response=response, context=downstream)

    @abc.abstractmethod
    async def request(
        self,
        service: str,
        method: str,
        path: str,
        *,
        exchange: Exchange | None = None,
        json: dict | None = None,
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
    ) -> CallResult:
        """Call *service* carrying baggage; merge the returned baggage back."""

    @abc.abstractmethod
    def request_sync(
        self,
        service: str,
        method: str,
        path: str,
        *,
        exchange: Exchange | None = None,
        json: dict | None = None,
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
    ) -> CallResult:
        """Synchronous variant for use in non-async contexts."""


class HttpTransport(Transport):
    """Direct HTTP transport built on httpx.

    ``mounts`` is handed to httpx clients unchanged, which lets several
    in-process ASGI apps be addressed by host name.
    """

    def __init__(
        self,
        codec: Codec | None = None,
        config: PropagationConfig | None = None,
        mounts: dict[str, httpx.AsyncBaseTransport] | None = None,
        sync_transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(codec=codec, config=config)
        self._mounts = mounts
        self._sync_transport = sync_transport
        # One httpx.AsyncClient per event loop — each loop's client has
        # asyncio internals bound to that loop.  Keyed by id(loop).
        self._clients: dict[int, httpx.AsyncClient] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        loop = asyncio.get_running_loop()
        key = id(loop)
        client = self._clients.get(key)
        if client is None or client.is_closed:
            client = httpx.AsyncClient(timeout=self.config.timeout, mounts=self._mounts)
            self._clients[key] = client
        return client

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        key = id(loop)
        client = self._clients.pop(key, None)
        if client and not client.is_closed:
            await client.aclose()

    async def request(
        self,
        service: str,
        method: str,
        path: str,
        *,
        exchange: Exchange | None = None,
        json: dict | None = None,
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
    ) -> CallResult:
        url = self._resolve_url(service, path)
        exchange = self._resolve_exchange(exchange)
        client = await self._get_client()
        try:
            resp = await client.request(
                method, url, json=json,
                timeout=timeout or self.config.timeout,
                headers=self._resolve_headers(exchange, headers),
            )
        except httpx.HTTPError as e:
            logger.warning(f"Call to '{service}' failed, no baggage merged: {e}")
            raise
        result = self._complete(exchange, resp)
        resp.raise_for_status()
        return result

    def request_sync(
        self,
        service: str,
        method: str,
        path: str,
        *,
        exchange: Exchange | None = None,
        json: dict | None = None,
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
    ) -> CallResult:
        url = self._resolve_url(service, path)
        exchange = self._resolve_exchange(exchange)
        try:
            with httpx.Client(timeout=self.config.timeout, transport=self._sync_transport) as client:
                resp = client.request(
                    method, url, json=json,
                    timeout=timeout or self.config.timeout,
                    headers=self._resolve_headers(exchange, headers),
                )
        except httpx.HTTPError as e:
            logger.warning(f"Call to '{service}' failed, no baggage merged: {e}")
            raise
        result = self._complete(exchange, resp)
        resp.raise_for_status()
        return result
