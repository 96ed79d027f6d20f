"""The ``AptosBB`` harness session.

A session pins an execution engine to a remote ledger snapshot, tracks the
sequence numbers of the accounts it drives, and exposes typed and raw state
reads. Every mutating call goes through ``run_transaction_with_output`` and
returns an output value; engine failures never raise, and a snapshot read that
fails mid-transaction comes back as ``Discard(STORAGE_ERROR)``. Direct state
reads (``read_resource`` and friends) raise ``ConnectivityError`` instead.
"""

from __future__ import annotations

import logging
import time
import warnings
from pathlib import Path
from typing import TypeVar

import httpx
from aptos_sdk.account import Account
from aptos_sdk.account_address import AccountAddress
from aptos_sdk.authenticator import Authenticator, Ed25519Authenticator
from aptos_sdk.transactions import RawTransaction, SignedTransaction, TransactionPayload
from aptos_sdk.type_tag import StructTag, TypeTag

from aptosbb.core.config import Settings, get_settings
from aptosbb.core.errors import BuildError, UnknownAccountError, VerificationWarning, ViewFunctionError
from aptosbb.core.move import MemberId, address_hex, parse_address, short_address
from aptosbb.core.networks import resolve_node_url
from aptosbb.core.types import BalanceReading, PinnedSnapshot, TransactionStatus
from aptosbb.executor.base import ExecutionEngine, TransactionOutput
from aptosbb.executor.fake_executor import FakeExecutor
from aptosbb.executor.natives import NativeFunction
from aptosbb.executor.resources import (
    OBJECT_GROUP_TAG,
    AccountResource,
    FungibleStoreResource,
    MoveResource,
    primary_apt_store,
)
from aptosbb.executor.state_key import AccessPath, StateKey, as_struct_tag
from aptosbb.harness.payloads import as_type_tag, entry_function_payload, module_publish_payload
from aptosbb.harness.sequence import SequenceLedger
from aptosbb.ingestion.ledger_client import fetch_latest_snapshot
from aptosbb.ingestion.move_builder import BuildOptions, MovePackageBuilder

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=MoveResource)

# Submission policy, not caller-configurable
MAX_GAS_AMOUNT = 2_000_000
GAS_UNIT_PRICE = 100
TRANSACTION_TTL_SECS = 300


class AptosBB:
    """Pentesting session over a forked Aptos ledger."""

    def __init__(
        self,
        executor: ExecutionEngine,
        snapshot: PinnedSnapshot,
        settings: Settings | None = None,
        builder: MovePackageBuilder | None = None,
    ) -> None:
        self.executor = executor
        self.snapshot = snapshot
        self.settings = settings or get_settings()
        self.builder = builder or MovePackageBuilder(
            cli_path=self.settings.aptos_cli_path,
            timeout=self.settings.build_timeout_seconds,
        )
        self.sequence_numbers = SequenceLedger()

    # ── Construction ─────────────────────────────────────────────────────

    @classmethod
    async def from_network_latest(
        cls,
        network: str | None = None,
        node_url: str | None = None,
        api_key: str | None = None,
        settings: Settings | None = None,
        transport: httpx.MockTransport | None = None,
    ) -> AptosBB:
        """Fork ``network`` (or ``node_url``) at its latest ledger version.

        The ledger info fetch is the only network round-trip made up front and
        is bounded by ``connect_timeout_seconds``; historical state is then
        read lazily at the pinned version.

        Raises:
            ConnectivityError: the node could not be reached or returned
                malformed ledger info.
        """
        settings = settings or get_settings()
        url = resolve_node_url(network or settings.network, node_url or settings.node_url)
        api_key = api_key or None

        snapshot = await fetch_latest_snapshot(
            url,
            api_key=api_key,
            timeout=settings.connect_timeout_seconds,
            transport=transport,
        )
        logger.info(
            "Connecting to %s at version %d (chain id %d%s)",
            url,
            snapshot.version,
            snapshot.chain_id,
            ", with API key" if api_key else "",
            extra={"version": snapshot.version, "chain_id": snapshot.chain_id},
        )

        executor = FakeExecutor.from_remote_state(
            url,
            snapshot.version,
            snapshot.chain_id,
            api_key=api_key,
            transport=transport,
            default_balance=settings.default_account_balance,
        )
        executor.set_block_time(snapshot.timestamp_secs)
        logger.debug("Set executor block time to %d", snapshot.timestamp_secs)
        return cls(executor, snapshot, settings=settings)

    @classmethod
    async def from_mainnet_latest(cls, **kwargs) -> AptosBB:
        """Fork mainnet anonymously. Subject to public rate limits."""
        return await cls.from_network_latest("mainnet", **kwargs)

    @classmethod
    async def from_mainnet_latest_with_api_key(cls, api_key: str, **kwargs) -> AptosBB:
        """Fork mainnet with an API key for higher rate limits."""
        return await cls.from_network_latest("mainnet", api_key=api_key, **kwargs)

    @classmethod
    def in_memory(
        cls,
        chain_id: int = 4,
        timestamp_secs: int | None = None,
        settings: Settings | None = None,
        builder: MovePackageBuilder | None = None,
    ) -> AptosBB:
        """A session over empty state, for offline scenarios and tests."""
        settings = settings or get_settings()
        if timestamp_secs is None:
            timestamp_secs = int(time.time())
        snapshot = PinnedSnapshot(version=0, chain_id=chain_id, timestamp_usecs=timestamp_secs * 1_000_000)
        executor = FakeExecutor.in_memory(
            chain_id,
            block_time_secs=timestamp_secs,
            default_balance=settings.default_account_balance,
        )
        return cls(executor, snapshot, settings=settings, builder=builder)

    @property
    def chain_id(self) -> int:
        return self.snapshot.chain_id

    @property
    def version(self) -> int:
        return self.snapshot.version

    def set_block_time(self, seconds: int) -> None:
        """Move the virtual clock used for expiry checks."""
        self.executor.set_block_time(seconds)

    advance_clock = set_block_time

    def register_native(self, member_id: str | MemberId, function: NativeFunction, view: bool = False) -> None:
        self.executor.register_native(member_id, function, view=view)

    def close(self) -> None:
        """Close the engine's connection to the forked node."""
        self.executor.close()

    def __enter__(self) -> AptosBB:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    # ── Accounts ─────────────────────────────────────────────────────────

    def create_account(self) -> Account:
        """Create a funded account at a fresh address."""
        address = Account.generate().address()
        account = self.executor.new_account_at(address)
        self.sequence_numbers.register(account.address())

        resource = self.read_account_resource(account.address())
        if resource is not None:
            logger.info(
                "Account created at %s (sequence number %d)",
                address_hex(account.address()),
                resource.sequence_number,
                extra={"address": address_hex(account.address())},
            )
        else:
            self._verification_failed(account.address())
        return account

    def create_account_at(self, address: AccountAddress | str) -> Account:
        """Create a funded account at ``address``.

        The sequence number is only tracked when the account can be read back.
        """
        address = parse_address(address)
        account = self.executor.new_account_at(address)
        if self.verify_account_exists(address):
            self.sequence_numbers.register(address)
            logger.info("Account created at %s", address_hex(address), extra={"address": address_hex(address)})
        else:
            self._verification_failed(address)
        return account

    def next_counter(self, address: AccountAddress) -> int:
        return self.sequence_numbers.next(address)

    def verify_account_exists(self, address: AccountAddress) -> bool:
        return self.read_account_resource(address) is not None

    def _verification_failed(self, address: AccountAddress) -> None:
        logger.warning(
            "Account creation at address %s may have failed: AccountResource not found",
            address_hex(address),
            extra={"address": address_hex(address)},
        )
        warnings.warn(
            f"AccountResource not found at {address_hex(address)}",
            VerificationWarning,
            stacklevel=3,
        )

    # ── Transactions ─────────────────────────────────────────────────────

    def publish_package(
        self,
        account: Account,
        package_dir: str | Path,
        named_addresses: dict[str, str] | None = None,
    ) -> TransactionStatus:
        """Build the Move package at ``package_dir`` and publish it from ``account``.

        A package that fails to build is reported as
        ``Keep(MiscellaneousError(ABORTED))`` and consumes no sequence number.
        """
        options = BuildOptions(
            with_srcs=True,
            with_abis=True,
            with_source_maps=True,
            with_error_map=True,
            named_addresses=dict(named_addresses or {}),
        )
        try:
            package = self.builder.build(package_dir, options)
        except BuildError as exc:
            logger.error("Failed to build package: %s", exc)
            if exc.stderr:
                logger.debug("Compiler output:\n%s", exc.stderr)
            return TransactionStatus.build_failure()

        return self.run_transaction(account, module_publish_payload(package))

    def run_entry_function(
        self,
        account: Account,
        module: AccountAddress | str,
        module_name: str,
        function: str,
        ty_args: list[TypeTag | StructTag | str] | None = None,
        args: list[bytes] | None = None,
    ) -> TransactionStatus:
        """Call an entry function with pre-serialized BCS arguments."""
        payload = entry_function_payload(module, module_name, function, ty_args, args)
        return self.run_transaction(account, payload)

    def run_transaction_with_output(self, account: Account, payload: TransactionPayload) -> TransactionOutput:
        """Sign and execute ``payload`` from ``account``.

        The account's sequence number is advanced whatever the outcome, including
        a ``Discard(STORAGE_ERROR)`` when the forked node fails during execution.

        Raises:
            UnknownAccountError: ``strict_accounts`` is enabled and the account
                was never registered with this session.
        """
        sender = account.address()
        if self.settings.strict_accounts and not self.sequence_numbers.is_registered(sender):
            raise UnknownAccountError(
                f"{address_hex(sender)} was not created through this session"
            )

        sequence_number = self.next_counter(sender)
        raw_txn = RawTransaction(
            sender,
            sequence_number,
            payload,
            MAX_GAS_AMOUNT,
            GAS_UNIT_PRICE,
            int(time.time()) + TRANSACTION_TTL_SECS,
            self.chain_id,
        )
        signature = account.sign(raw_txn.keyed())
        signed_txn = SignedTransaction(
            raw_txn,
            Authenticator(Ed25519Authenticator(account.public_key(), signature)),
        )

        output = self.executor.execute_and_apply(signed_txn)
        logger.debug(
            "Transaction %d from %s: %s (gas %d)",
            sequence_number,
            short_address(sender),
            output.status,
            output.gas_used,
            extra={
                "address": address_hex(sender),
                "sequence_number": sequence_number,
                "status": str(output.status),
                "gas_used": output.gas_used,
            },
        )
        return output

    submit = run_transaction_with_output

    def run_transaction(self, account: Account, payload: TransactionPayload) -> TransactionStatus:
        return self.run_transaction_with_output(account, payload).status

    # ── State reads ──────────────────────────────────────────────────────

    def read_resource(self, address: AccountAddress, resource_cls: type[T]) -> T | None:
        return self.executor.read_resource(address, resource_cls)

    def read_account_resource(self, address: AccountAddress) -> AccountResource | None:
        return self.read_resource(address, AccountResource)

    def read_resource_from_group(
        self, address: AccountAddress, group_tag: StructTag | str, resource_cls: type[T]
    ) -> T | None:
        return self.executor.read_resource_from_group(address, group_tag, resource_cls)

    def read_state_value(self, state_key: StateKey) -> bytes | None:
        return self.executor.read_state_value(state_key)

    def exists_resource(self, address: AccountAddress, struct_tag: StructTag | str) -> bool:
        """Whether ``struct_tag`` is stored at ``address``.

        Two key derivations are tried in turn, and either one resolving a
        value counts as existence:

        1. the resource state key built directly from address and tag;
        2. the key decoded from the BCS bytes of the resource access path.
        """
        tag = as_struct_tag(struct_tag)

        resource_key = StateKey.resource(address, tag)
        if self.read_state_value(resource_key) is not None:
            return True

        access_path = AccessPath.resource_access_path(address, tag)
        try:
            path_key = StateKey.decode_access_path(access_path.to_bytes())
        except ValueError:
            return False
        return self.read_state_value(path_key) is not None

    # ── Balances ─────────────────────────────────────────────────────────

    def read_balance_state(self, address: AccountAddress) -> BalanceReading:
        """APT balance of ``address``, distinguishing a missing store from zero."""
        store = self.read_resource_from_group(primary_apt_store(address), OBJECT_GROUP_TAG, FungibleStoreResource)
        return BalanceReading.from_store(store.balance if store is not None else None)

    def read_aptos_balance(self, address: AccountAddress) -> int:
        """APT balance from the primary fungible store; 0 when there is none."""
        return self.read_balance_state(address).amount

    def get_apt_balance(self, address: AccountAddress) -> int | None:
        balance = self.read_aptos_balance(address)
        return balance if balance > 0 else None

    def has_apt_balance(self, account: Account) -> bool:
        return self.read_aptos_balance(account.address()) > 0

    # ── View functions ───────────────────────────────────────────────────

    def execute_view_function(
        self,
        module: AccountAddress | str,
        module_name: str,
        function: str,
        ty_args: list[TypeTag | StructTag | str] | None = None,
        args: list[bytes] | None = None,
    ) -> list[bytes]:
        """Run a view function and return its BCS-encoded results.

        Raises:
            IdentifierError: the function reference does not parse.
            ViewFunctionError: the engine failed to execute the function.
        """
        address = module if isinstance(module, str) else address_hex(module)
        member_id = MemberId.parse(f"{address}::{module_name}::{function}")
        type_args = [as_type_tag(tag) for tag in ty_args or []]

        output = self.executor.execute_view_function(member_id, type_args, list(args or []))
        if not output.succeeded:
            raise ViewFunctionError(f"View function execution failed: {output.error}")
        return output.values
