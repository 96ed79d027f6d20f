"""Fetch ledger metadata and historical state from an Aptos fullnode."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from aptosbb.core.config import get_settings
from aptosbb.core.errors import ConnectivityError
from aptosbb.core.types import PinnedSnapshot

logger = logging.getLogger(__name__)

BCS_CONTENT_TYPE = "application/x-bcs"


def _auth_headers(api_key: str | None, accept: str = "application/json") -> dict[str, str]:
    headers = {
        "User-Agent": "aptosbb/0.1.0",
        "Accept": accept,
    }
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def _parse_ledger_info(data: Any, node_url: str) -> PinnedSnapshot:
    """Validate the node's ledger info payload and pin it."""
    if not isinstance(data, dict):
        raise ConnectivityError(f"Malformed ledger info from {node_url}: expected an object")
    try:
        return PinnedSnapshot(
            version=int(data["ledger_version"]),
            chain_id=int(data["chain_id"]),
            timestamp_usecs=int(data["ledger_timestamp"]),
            node_url=node_url,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ConnectivityError(
            f"Malformed ledger info from {node_url}: {exc}", response=data
        ) from exc


class LedgerClient:
    """Async client for the ledger-info endpoint of a fullnode.

    A single round-trip, no retries: a failure is reported to the caller as
    ``ConnectivityError``.
    """

    def __init__(
        self,
        node_url: str,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.node_url = node_url.rstrip("/")
        self.timeout = timeout if timeout is not None else get_settings().connect_timeout_seconds
        self._client = httpx.AsyncClient(
            headers=_auth_headers(api_key),
            timeout=httpx.Timeout(self.timeout),
            transport=transport,
        )

    async def __aenter__(self) -> LedgerClient:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def get_ledger_information(self) -> PinnedSnapshot:
        """Fetch the latest ledger info and pin it as a snapshot."""
        try:
            resp = await asyncio.wait_for(
                self._client.get(f"{self.node_url}/"), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            raise ConnectivityError(
                f"Timed out after {self.timeout}s fetching ledger info from {self.node_url}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ConnectivityError(f"Failed to reach {self.node_url}: {exc}") from exc

        if resp.status_code >= 400:
            raise ConnectivityError(
                f"Ledger info request to {self.node_url} failed with HTTP {resp.status_code}",
                status_code=resp.status_code,
                response=resp.text,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise ConnectivityError(f"Ledger info from {self.node_url} is not JSON") from exc

        snapshot = _parse_ledger_info(data, self.node_url)
        logger.info(
            "Fetched ledger info: version %d, chain id %d",
            snapshot.version,
            snapshot.chain_id,
            extra={"version": snapshot.version, "chain_id": snapshot.chain_id},
        )
        return snapshot

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


async def fetch_latest_snapshot(
    node_url: str,
    api_key: str | None = None,
    timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PinnedSnapshot:
    """Fetch the node's current ledger metadata as a ``PinnedSnapshot``."""
    async with LedgerClient(node_url, api_key=api_key, timeout=timeout, transport=transport) as client:
        return await client.get_ledger_information()


class RemoteStateReader:
    """Synchronous BCS reads of historical state pinned to one ledger version.

    The snapshot is immutable, so every answer (absence included) is cached
    for the lifetime of the reader.
    """

    def __init__(
        self,
        node_url: str,
        version: int,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.node_url = node_url.rstrip("/")
        self.version = version
        self._client = httpx.Client(
            base_url=self.node_url,
            headers=_auth_headers(api_key, accept=BCS_CONTENT_TYPE),
            timeout=httpx.Timeout(
                timeout if timeout is not None else get_settings().request_timeout_seconds
            ),
            transport=transport,
        )
        self._cache: dict[tuple[str, ...], bytes | None] = {}

    def fetch_resource(self, address: str, struct_tag: str) -> bytes | None:
        """BCS bytes of ``struct_tag`` stored at ``address``, or None."""
        return self._cached(
            ("resource", address, struct_tag),
            "GET",
            f"/accounts/{address}/resource/{struct_tag}",
        )

    def fetch_module(self, address: str, module_name: str) -> bytes | None:
        """Bytecode of ``address::module_name``, or None."""
        return self._cached(
            ("module", address, module_name),
            "GET",
            f"/accounts/{address}/module/{module_name}",
        )

    def fetch_table_item(self, handle: str, key: bytes) -> bytes | None:
        """Raw value stored under ``key`` in table ``handle``, or None."""
        return self._cached(
            ("table_item", handle, key.hex()),
            "POST",
            f"/tables/{handle}/raw_item",
            json={"key": f"0x{key.hex()}"},
        )

    def _cached(self, cache_key: tuple[str, ...], method: str, path: str, **kwargs) -> bytes | None:
        if cache_key in self._cache:
            return self._cache[cache_key]
        value = self._request(method, path, **kwargs)
        self._cache[cache_key] = value
        return value

    def _request(self, method: str, path: str, **kwargs) -> bytes | None:
        try:
            resp = self._client.request(
                method, path, params={"ledger_version": str(self.version)}, **kwargs
            )
        except httpx.HTTPError as exc:
            raise ConnectivityError(f"Failed to read {path} from {self.node_url}: {exc}") from exc

        if resp.status_code == 404:
            logger.debug("State %s absent at version %d", path, self.version)
            return None
        if resp.status_code >= 400:
            raise ConnectivityError(
                f"State read {path} failed with HTTP {resp.status_code}",
                status_code=resp.status_code,
                response=resp.text,
            )
        return resp.content

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()
