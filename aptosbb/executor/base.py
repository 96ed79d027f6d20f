"""Execution engine interface and its result types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, TypeVar

from aptos_sdk.account import Account
from aptos_sdk.account_address import AccountAddress
from aptos_sdk.transactions import SignedTransaction
from aptos_sdk.type_tag import StructTag, TypeTag

from aptosbb.core.move import MemberId
from aptosbb.core.types import TransactionStatus
from aptosbb.executor.resources import MoveResource
from aptosbb.executor.state_key import StateKey

T = TypeVar("T", bound=MoveResource)


@dataclass
class ContractEvent:
    """An event emitted while executing a transaction."""

    type_tag: str
    data: bytes
    sequence_number: int = 0


@dataclass
class TransactionOutput:
    """Everything a transaction produced. Not retained by the harness."""

    status: TransactionStatus
    # Resource group entries hold only the members the transaction wrote
    write_set: dict[StateKey, bytes | None] = field(default_factory=dict)
    events: list[ContractEvent] = field(default_factory=list)
    gas_used: int = 0


@dataclass
class ViewFunctionOutput:
    """Return values of a view call, or the reason it failed."""

    values: list[bytes] | None = None
    error: str | None = None
    gas_used: int = 0

    @property
    def succeeded(self) -> bool:
        return self.values is not None


class ExecutionEngine(Protocol):
    """The capability the harness needs from an execution engine."""

    chain_id: int
    block_time_secs: int

    def new_account_at(self, address: AccountAddress) -> Account: ...

    def execute_and_apply(self, signed_txn: SignedTransaction) -> TransactionOutput: ...

    def execute_view_function(
        self, member_id: MemberId, ty_args: list[TypeTag], args: list[bytes]
    ) -> ViewFunctionOutput: ...

    def read_state_value(self, state_key: StateKey) -> bytes | None: ...

    def read_resource(self, address: AccountAddress, resource_cls: type[T]) -> T | None: ...

    def read_resource_from_group(
        self, address: AccountAddress, group_tag: StructTag | str, resource_cls: type[T]
    ) -> T | None: ...

    def set_block_time(self, seconds: int) -> None: ...

    def register_native(self, member_id: MemberId | str, function, view: bool = False) -> None: ...

    def close(self) -> None: ...
