"""Shared fixtures for the AptosBB test suite."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Callable
from unittest.mock import MagicMock

import httpx
import pytest
from aptos_sdk.account import Account
from aptos_sdk.bcs import Serializer

from aptosbb.core.config import Settings
from aptosbb.executor.fake_executor import FakeExecutor
from aptosbb.executor.resources import ModuleMetadata, PackageMetadata
from aptosbb.harness.session import AptosBB
from aptosbb.ingestion.move_builder import BuiltPackage, MovePackageBuilder

NOW = int(time.time())
CHAIN_ID = 4
DEFAULT_BALANCE = 100_000_000_000  # 1000 APT
NODE_URL = "https://fullnode.test/v1"

# Not real Move bytecode: the engine stores published code without interpreting it
FAKE_BYTECODE = b"\xa1\x1c\xeb\x0b\x07\x00\x00\x0a"


# ── Settings ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the caller's environment."""
    return Settings(
        app_env="development",
        network="local",
        node_url="",
        api_key="",
        default_account_balance=DEFAULT_BALANCE,
        strict_accounts=False,
        aptos_cli_path="aptos",
        build_timeout_seconds=60,
    )


@pytest.fixture
def strict_settings(settings: Settings) -> Settings:
    return settings.model_copy(update={"strict_accounts": True})


# ── Engine and harness ───────────────────────────────────────────────────────


@pytest.fixture
def executor() -> FakeExecutor:
    """An engine over empty state with the clock at wall-clock time."""
    return FakeExecutor.in_memory(CHAIN_ID, block_time_secs=NOW, default_balance=DEFAULT_BALANCE)


@pytest.fixture
def builder() -> MagicMock:
    """A package builder that never shells out."""
    return MagicMock(spec=MovePackageBuilder)


@pytest.fixture
def harness(settings: Settings, builder: MagicMock) -> AptosBB:
    return AptosBB.in_memory(CHAIN_ID, timestamp_secs=NOW, settings=settings, builder=builder)


@pytest.fixture
def alice(harness: AptosBB) -> Account:
    return harness.create_account()


@pytest.fixture
def bob(harness: AptosBB) -> Account:
    return harness.create_account()


# ── Packages ─────────────────────────────────────────────────────────────────


def make_package(name: str = "counter", modules: tuple[str, ...] = ("counter",)) -> BuiltPackage:
    metadata = PackageMetadata(
        name=name,
        modules=[ModuleMetadata(module) for module in modules],
        source_digest="0" * 64,
    )
    return BuiltPackage(
        package_dir=Path(f"/packages/{name}"),
        metadata_bytes=metadata.to_bytes(),
        modules=[FAKE_BYTECODE + module.encode() for module in modules],
    )


@pytest.fixture
def counter_package() -> BuiltPackage:
    return make_package()


def bcs(value: Any, encoder: Callable[[Serializer, Any], None]) -> bytes:
    ser = Serializer()
    encoder(ser, value)
    return ser.output()


# ── Remote node ──────────────────────────────────────────────────────────────


def ledger_info(version: int = 1_234_567, chain_id: int = 1, timestamp_secs: int = NOW) -> dict[str, Any]:
    return {
        "chain_id": chain_id,
        "epoch": "9000",
        "ledger_version": str(version),
        "oldest_ledger_version": "0",
        "ledger_timestamp": str(timestamp_secs * 1_000_000),
        "node_role": "full_node",
        "oldest_block_height": "0",
        "block_height": "42",
        "git_hash": "deadbeef",
    }


class FakeNode:
    """Records requests and serves ledger info plus a fixed resource table."""

    def __init__(self, info: dict[str, Any] | None = None) -> None:
        self.info = info if info is not None else ledger_info()
        self.resources: dict[tuple[str, str], bytes] = {}
        self.requests: list[httpx.Request] = []
        # When set, every state read answers with this HTTP status
        self.state_status: int | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in ("/v1", "/v1/"):
            return httpx.Response(200, json=self.info)
        if self.state_status is not None:
            return httpx.Response(self.state_status, json={"error_code": "internal_error"})
        parts = path.split("/")
        if len(parts) == 6 and parts[2] == "accounts" and parts[4] == "resource":
            data = self.resources.get((parts[3], parts[5]))
            if data is not None:
                return httpx.Response(200, content=data, headers={"Content-Type": "application/x-bcs"})
        return httpx.Response(404, json={"error_code": "resource_not_found"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_node() -> FakeNode:
    return FakeNode()
