"""In-process execution engine over a forked ledger snapshot.

State reads resolve against the session overlay first and fall back to the
pinned remote snapshot. Every applied transaction writes into the overlay;
nothing is ever sent back to the remote ledger and there is no rollback.

Admission mirrors the checks a node runs before execution (signature, chain id,
expiry, sender existence, authentication key, sequence number, fee headroom).
Failing admission discards the transaction. A kept transaction always bumps
the sender's sequence number and pays for its gas, even when its payload aborts.
"""

from __future__ import annotations

import logging
from typing import TypeVar

import httpx
from aptos_sdk import ed25519
from aptos_sdk.account import Account
from aptos_sdk.account_address import AccountAddress
from aptos_sdk.transactions import EntryFunction, SignedTransaction
from aptos_sdk.type_tag import StructTag, TypeTag

from aptosbb.core.config import get_settings
from aptosbb.core.errors import ConnectivityError
from aptosbb.core.move import MemberId, address_hex, parse_address
from aptosbb.core.types import ExecutionStatus, ExecutionStatusKind, StatusCode, TransactionStatus
from aptosbb.executor.base import TransactionOutput, ViewFunctionOutput
from aptosbb.executor.natives import (
    FRAMEWORK_ENTRY_FUNCTIONS,
    FRAMEWORK_VIEW_FUNCTIONS,
    MoveAbort,
    NativeContext,
    NativeError,
    NativeFunction,
    member_key,
)
from aptosbb.executor.resources import (
    OBJECT_GROUP_TAG,
    AccountResource,
    FungibleStoreResource,
    MoveResource,
    primary_apt_store,
)
from aptosbb.executor.state_key import StateKey, as_struct_tag
from aptosbb.executor.state_view import (
    EmptyStateView,
    OverlayStateView,
    RemoteSnapshotView,
    StateView,
    WriteBuffer,
)
from aptosbb.ingestion.ledger_client import RemoteStateReader

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=MoveResource)

FRAMEWORK_ADDRESS = parse_address("0x1")

# Gas schedule, in external gas units
MIN_TRANSACTION_GAS_UNITS = 2
INTRINSIC_GAS_UNITS = 6
GAS_UNITS_PER_KB_PAYLOAD = 1
GAS_UNITS_PER_KB_WRITE = 4
VIEW_GAS_UNITS = 1

FRAMEWORK_MODULES = {
    member.split("::")[1] for member in (*FRAMEWORK_ENTRY_FUNCTIONS, *FRAMEWORK_VIEW_FUNCTIONS)
}


class FakeExecutor:
    """Executes transactions against snapshot ⊕ overlay state."""

    def __init__(
        self,
        base_view: StateView,
        chain_id: int,
        block_time_secs: int = 0,
        default_balance: int | None = None,
    ) -> None:
        self.chain_id = chain_id
        self.block_time_secs = block_time_secs
        self.state = OverlayStateView(base_view)
        self.default_balance = (
            default_balance if default_balance is not None else get_settings().default_account_balance
        )
        self._entry_natives: dict[str, NativeFunction] = dict(FRAMEWORK_ENTRY_FUNCTIONS)
        self._view_natives: dict[str, NativeFunction] = dict(FRAMEWORK_VIEW_FUNCTIONS)
        self.transactions_executed = 0

    # ── Construction ─────────────────────────────────────────────────────

    @classmethod
    def from_remote_state(
        cls,
        node_url: str,
        version: int,
        chain_id: int,
        api_key: str | None = None,
        transport: httpx.BaseTransport | None = None,
        default_balance: int | None = None,
    ) -> FakeExecutor:
        """Fork the ledger served by ``node_url`` at ``version``."""
        reader = RemoteStateReader(node_url, version, api_key=api_key, transport=transport)
        logger.info("Forking %s at version %d", node_url, version, extra={"version": version})
        return cls(RemoteSnapshotView(reader), chain_id, default_balance=default_balance)

    @classmethod
    def in_memory(cls, chain_id: int = 4, block_time_secs: int = 0, default_balance: int | None = None) -> FakeExecutor:
        """An engine over an empty snapshot, for offline sessions."""
        return cls(EmptyStateView(), chain_id, block_time_secs, default_balance)

    def set_block_time(self, seconds: int) -> None:
        self.block_time_secs = seconds

    def register_native(self, member_id: str | MemberId, function: NativeFunction, view: bool = False) -> None:
        """Provide the implementation of a published module's function.

        Entry functions are only dispatched when the module's code is present
        in state, so publish the package before calling them.
        """
        member = member_id if isinstance(member_id, MemberId) else MemberId.parse(member_id)
        key = str(member)
        if view:
            self._view_natives[key] = function
        else:
            self._entry_natives[key] = function

    def close(self) -> None:
        """Release the connection to the forked node, if any."""
        self.state.base.close()

    def __enter__(self) -> FakeExecutor:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    # ── Accounts ─────────────────────────────────────────────────────────

    def new_account_at(self, address: AccountAddress, balance: int | None = None) -> Account:
        """Create a funded account at ``address`` with a fresh signing key."""
        private_key = ed25519.PrivateKey.random()
        account = Account(address, private_key)
        auth_key = AccountAddress.from_key(private_key.public_key()).address

        buffer = WriteBuffer(self.state)
        ctx = NativeContext(buffer, block_time_secs=self.block_time_secs)
        ctx.write_resource(address, AccountResource.new(address, auth_key))
        amount = self.default_balance if balance is None else balance
        store_address = primary_apt_store(address)
        store = ctx.read_group_member(store_address, OBJECT_GROUP_TAG, FungibleStoreResource)
        if store is None:
            ctx.deposit(address, amount)
        else:
            store.balance = amount
            ctx.write_group_members(store_address, OBJECT_GROUP_TAG, [store])
        buffer.apply_to(self.state)
        logger.debug("Engine created account %s", address_hex(address), extra={"address": address_hex(address)})
        return account

    # ── Reads ────────────────────────────────────────────────────────────

    def read_state_value(self, state_key: StateKey) -> bytes | None:
        return self.state.get(state_key)

    def read_resource(self, address: AccountAddress, resource_cls: type[T]) -> T | None:
        data = self.state.get(StateKey.resource(address, resource_cls.struct_tag()))
        return _decode(resource_cls, data)

    def read_resource_from_group(
        self, address: AccountAddress, group_tag: StructTag | str, resource_cls: type[T]
    ) -> T | None:
        data = self.state.get_group_member(address.address, as_struct_tag(group_tag), resource_cls.struct_tag())
        return _decode(resource_cls, data)

    # ── Execution ────────────────────────────────────────────────────────

    def execute_and_apply(self, signed_txn: SignedTransaction) -> TransactionOutput:
        """Execute one transaction and apply its writes to the overlay.

        A snapshot read that fails part way through discards the transaction
        with ``STORAGE_ERROR`` and applies nothing.
        """
        try:
            return self._execute(signed_txn)
        except ConnectivityError as exc:
            logger.error(
                "Snapshot read failed while executing a transaction from %s: %s",
                address_hex(signed_txn.transaction.sender),
                exc,
                extra={"address": address_hex(signed_txn.transaction.sender)},
            )
            return TransactionOutput(TransactionStatus.discard(StatusCode.STORAGE_ERROR))

    def _execute(self, signed_txn: SignedTransaction) -> TransactionOutput:
        txn = signed_txn.transaction
        sender = txn.sender

        discard = self._admission_check(signed_txn)
        if discard is not None:
            logger.debug("Discarded transaction from %s: %s", address_hex(sender), discard.value)
            return TransactionOutput(TransactionStatus.discard(discard))

        payload = txn.payload.value
        buffer = WriteBuffer(self.state)
        ctx = NativeContext(buffer, sender=sender, block_time_secs=self.block_time_secs)
        status = self._run_entry_function(ctx, payload)

        gas_used = self._gas_for(payload, buffer)
        if gas_used > txn.max_gas_amount:
            status = ExecutionStatus(ExecutionStatusKind.OUT_OF_GAS)
            gas_used = txn.max_gas_amount

        if status.kind != ExecutionStatusKind.SUCCESS:
            buffer = WriteBuffer(self.state)
            ctx = NativeContext(buffer, sender=sender, block_time_secs=self.block_time_secs)

        self._epilogue(ctx, sender, gas_used * txn.gas_unit_price)
        buffer.apply_to(self.state)
        self.transactions_executed += 1

        return TransactionOutput(
            status=TransactionStatus.keep(status),
            write_set=buffer.write_set(),
            events=ctx.events,
            gas_used=gas_used,
        )

    def execute_view_function(
        self, member_id: MemberId | str, ty_args: list[TypeTag], args: list[bytes]
    ) -> ViewFunctionOutput:
        """Run a view function without touching the overlay."""
        member = member_id if isinstance(member_id, MemberId) else MemberId.parse(member_id)
        try:
            return self._view(member, ty_args, args)
        except ConnectivityError as exc:
            return ViewFunctionOutput(error=f"{StatusCode.STORAGE_ERROR.value}: {exc}")

    def _view(self, member: MemberId, ty_args: list[TypeTag], args: list[bytes]) -> ViewFunctionOutput:
        if not self._module_resident(AccountAddress(member.address), member.module_name):
            return ViewFunctionOutput(error=f"{StatusCode.LINKER_ERROR.value}: module {member.module_id} not found")
        native = self._view_natives.get(str(member))
        if native is None:
            return ViewFunctionOutput(
                error=f"{StatusCode.FUNCTION_RESOLUTION_FAILURE.value}: no view function {member}"
            )

        ctx = NativeContext(WriteBuffer(self.state), read_only=True, block_time_secs=self.block_time_secs)
        try:
            values = native(ctx, list(ty_args), list(args))
        except MoveAbort as exc:
            return ViewFunctionOutput(error=f"Move abort in {exc.location}: {exc.code:#x}", gas_used=VIEW_GAS_UNITS)
        except NativeError as exc:
            return ViewFunctionOutput(error=f"{exc.status_code.value}: {exc}", gas_used=VIEW_GAS_UNITS)
        return ViewFunctionOutput(values=list(values or []), gas_used=VIEW_GAS_UNITS)

    # ── Internals ────────────────────────────────────────────────────────

    def _admission_check(self, signed_txn: SignedTransaction) -> StatusCode | None:
        txn = signed_txn.transaction
        if not signed_txn.verify():
            return StatusCode.INVALID_SIGNATURE
        if txn.chain_id != self.chain_id:
            return StatusCode.BAD_CHAIN_ID
        if txn.expiration_timestamps_secs <= self.block_time_secs:
            return StatusCode.TRANSACTION_EXPIRED
        if txn.max_gas_amount < MIN_TRANSACTION_GAS_UNITS:
            return StatusCode.MAX_GAS_UNITS_BELOW_MIN_TRANSACTION_GAS_UNITS
        account = self.read_resource(txn.sender, AccountResource)
        if account is None:
            return StatusCode.SENDING_ACCOUNT_DOES_NOT_EXIST
        public_key = getattr(signed_txn.authenticator.authenticator, "public_key", None)
        if public_key is None or AccountAddress.from_key(public_key).address != account.authentication_key:
            return StatusCode.INVALID_AUTH_KEY
        if txn.sequence_number < account.sequence_number:
            return StatusCode.SEQUENCE_NUMBER_TOO_OLD
        if txn.sequence_number > account.sequence_number:
            return StatusCode.SEQUENCE_NUMBER_TOO_NEW
        store = self.read_resource_from_group(primary_apt_store(txn.sender), OBJECT_GROUP_TAG, FungibleStoreResource)
        balance = store.balance if store is not None else 0
        if balance < txn.max_gas_amount * txn.gas_unit_price:
            return StatusCode.INSUFFICIENT_BALANCE_FOR_TRANSACTION_FEE
        if not isinstance(txn.payload.value, EntryFunction):
            return StatusCode.FEATURE_UNDER_GATING
        return None

    def _run_entry_function(self, ctx: NativeContext, payload: EntryFunction) -> ExecutionStatus:
        module_address = payload.module.address
        module_name = payload.module.name
        key = member_key(module_address, module_name, payload.function)

        if not self._module_resident(module_address, module_name, ctx.buffer):
            return ExecutionStatus.miscellaneous(StatusCode.LINKER_ERROR)
        native = self._entry_natives.get(key)
        if native is None:
            return ExecutionStatus.miscellaneous(StatusCode.FUNCTION_RESOLUTION_FAILURE)

        try:
            native(ctx, list(payload.ty_args), list(payload.args))
        except MoveAbort as exc:
            return ExecutionStatus.move_abort(exc.location, exc.code)
        except NativeError as exc:
            return ExecutionStatus.miscellaneous(exc.status_code)
        except ConnectivityError:
            raise
        except Exception:
            logger.exception("Native %s failed", key)
            return ExecutionStatus.miscellaneous(StatusCode.UNEXPECTED_ERROR_FROM_KNOWN_MOVE_FUNCTION)
        return ExecutionStatus.success()

    def _module_resident(self, address: AccountAddress, module_name: str, buffer: WriteBuffer | None = None) -> bool:
        if address.address == FRAMEWORK_ADDRESS.address and module_name in FRAMEWORK_MODULES:
            return True
        view = buffer if buffer is not None else self.state
        return view.get(StateKey.module(address, module_name)) is not None

    def _gas_for(self, payload: EntryFunction, buffer: WriteBuffer) -> int:
        payload_bytes = sum(len(arg) for arg in payload.args)
        write_bytes = buffer.written_bytes()
        return (
            INTRINSIC_GAS_UNITS
            + GAS_UNITS_PER_KB_PAYLOAD * (payload_bytes // 1024)
            + GAS_UNITS_PER_KB_WRITE * (write_bytes // 1024)
        )

    def _epilogue(self, ctx: NativeContext, sender: AccountAddress, fee: int) -> None:
        account = ctx.read_resource(sender, AccountResource)
        account.sequence_number += 1
        ctx.write_resource(sender, account)
        # The payload may have spent what admission reserved for fees
        charge = min(fee, ctx.fungible_balance(sender) or 0)
        if charge:
            ctx.withdraw(sender, charge)


def _decode(resource_cls: type[T], data: bytes | None) -> T | None:
    if data is None:
        return None
    try:
        return resource_cls.from_bytes(data)
    except Exception:
        logger.debug("Failed to deserialize %s", resource_cls.STRUCT_TAG, exc_info=True)
        return None
