"""Python implementations of the framework functions the harness relies on.

The executor does not interpret Move bytecode. Entry and view functions are
dispatched to callables registered under their ``address::module::function``
id: the framework ones below, plus any the caller registers for modules it
publishes.
"""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from aptos_sdk.account_address import AccountAddress
from aptos_sdk.bcs import Deserializer, Serializer
from aptos_sdk.type_tag import StructTag, TypeTag

from aptosbb.core.move import address_hex, short_address
from aptosbb.core.types import StatusCode
from aptosbb.executor.base import ContractEvent
from aptosbb.executor.resources import (
    APT_METADATA_ADDRESS,
    OBJECT_GROUP_TAG,
    AccountResource,
    FungibleStoreResource,
    MoveResource,
    ObjectCoreResource,
    PackageMetadata,
    PackageRegistryResource,
    primary_store_address,
)
from aptosbb.executor.state_key import StateKey, as_struct_tag
from aptosbb.executor.state_view import WriteBuffer

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=MoveResource)

APTOS_COIN_TAG = "0x1::aptos_coin::AptosCoin"

# error::invalid_argument / not_found / already_exists categories
_INVALID_ARGUMENT = 0x1
_NOT_FOUND = 0x6
_ALREADY_EXISTS = 0x8


def error_code(category: int, reason: int) -> int:
    return (category << 16) | reason


class MoveAbort(Exception):
    """Raised by a native to abort the running transaction."""

    def __init__(self, location: str, code: int):
        super().__init__(f"Move abort in {location}: {code:#x}")
        self.location = location
        self.code = code


class NativeError(Exception):
    """A native rejected its call for a VM-level reason (not an abort)."""

    def __init__(self, status_code: StatusCode, message: str = ""):
        super().__init__(message or status_code.value)
        self.status_code = status_code


class NativeContext:
    """State access for a native while it runs inside one transaction or view."""

    def __init__(
        self,
        buffer: WriteBuffer,
        sender: AccountAddress | None = None,
        read_only: bool = False,
        block_time_secs: int = 0,
    ) -> None:
        self.buffer = buffer
        self.sender = sender
        self.read_only = read_only
        self.block_time_secs = block_time_secs
        self.events: list[ContractEvent] = []

    # ── Resources ────────────────────────────────────────────────────────

    def read_resource(self, address: AccountAddress, resource_cls: type[R]) -> R | None:
        data = self.buffer.get(StateKey.resource(address, resource_cls.struct_tag()))
        return resource_cls.from_bytes(data) if data is not None else None

    def write_resource(self, address: AccountAddress, resource: MoveResource) -> None:
        self._check_writable()
        self.buffer.put(StateKey.resource(address, resource.struct_tag()), resource.to_bytes())

    def read_group_member(
        self, address: AccountAddress, group_tag: StructTag | str, resource_cls: type[R]
    ) -> R | None:
        data = self.buffer.get_group_member(address.address, as_struct_tag(group_tag), resource_cls.struct_tag())
        return resource_cls.from_bytes(data) if data is not None else None

    def write_group_members(
        self, address: AccountAddress, group_tag: StructTag | str, resources: list[MoveResource]
    ) -> None:
        """Write ``resources`` into a group; other members are left as they are."""
        self._check_writable()
        tag = as_struct_tag(group_tag)
        for resource in resources:
            self.buffer.put_group_member(address.address, tag, resource.struct_tag(), resource.to_bytes())

    def module_exists(self, address: AccountAddress, module_name: str) -> bool:
        return self.buffer.get(StateKey.module(address, module_name)) is not None

    def publish_module(self, address: AccountAddress, module_name: str, code: bytes) -> None:
        self._check_writable()
        self.buffer.put(StateKey.module(address, module_name), code)

    def emit(self, type_tag: str, data: bytes) -> None:
        self.events.append(ContractEvent(type_tag, data, len(self.events)))

    # ── Accounts and APT ─────────────────────────────────────────────────

    def account_exists(self, address: AccountAddress) -> bool:
        return self.read_resource(address, AccountResource) is not None

    def create_account(self, address: AccountAddress, authentication_key: bytes | None = None) -> None:
        if self.account_exists(address):
            raise MoveAbort("0x1::account", error_code(_ALREADY_EXISTS, 1))
        self.write_resource(address, AccountResource.new(address, authentication_key or address.address))

    def fungible_balance(self, owner: AccountAddress, metadata: AccountAddress = APT_METADATA_ADDRESS) -> int | None:
        store = self.read_group_member(primary_store_address(owner, metadata), OBJECT_GROUP_TAG, FungibleStoreResource)
        return store.balance if store is not None else None

    def deposit(self, owner: AccountAddress, amount: int, metadata: AccountAddress = APT_METADATA_ADDRESS) -> None:
        store_address = primary_store_address(owner, metadata)
        store = self.read_group_member(store_address, OBJECT_GROUP_TAG, FungibleStoreResource)
        core = self.read_group_member(store_address, OBJECT_GROUP_TAG, ObjectCoreResource)
        if store is None:
            store = FungibleStoreResource(metadata=metadata)
        if core is None:
            core = ObjectCoreResource(owner=owner)
        if store.frozen:
            raise MoveAbort("0x1::fungible_asset", error_code(_INVALID_ARGUMENT, 3))
        store.balance += amount
        self.write_group_members(store_address, OBJECT_GROUP_TAG, [core, store])

    def withdraw(self, owner: AccountAddress, amount: int, metadata: AccountAddress = APT_METADATA_ADDRESS) -> None:
        store_address = primary_store_address(owner, metadata)
        store = self.read_group_member(store_address, OBJECT_GROUP_TAG, FungibleStoreResource)
        if store is None or store.balance < amount:
            raise MoveAbort("0x1::fungible_asset", error_code(_INVALID_ARGUMENT, 4))
        if store.frozen:
            raise MoveAbort("0x1::fungible_asset", error_code(_INVALID_ARGUMENT, 3))
        store.balance -= amount
        self.write_group_members(store_address, OBJECT_GROUP_TAG, [store])

    def _check_writable(self) -> None:
        if self.read_only:
            raise NativeError(StatusCode.UNEXPECTED_ERROR_FROM_KNOWN_MOVE_FUNCTION, "view functions cannot write state")


NativeFunction = Callable[[NativeContext, "list[TypeTag]", "list[bytes]"], "list[bytes] | None"]


# ── Argument helpers ─────────────────────────────────────────────────────────


def decode_args(args: list[bytes], *decoders: Callable[[Deserializer], object]) -> list:
    """Decode BCS arguments, rejecting wrong arity and trailing bytes."""
    if len(args) != len(decoders):
        raise NativeError(
            StatusCode.NUMBER_OF_ARGUMENTS_MISMATCH,
            f"expected {len(decoders)} arguments, got {len(args)}",
        )
    values = []
    for raw, decoder in zip(args, decoders):
        der = Deserializer(raw)
        try:
            value = decoder(der)
        except Exception as exc:
            raise NativeError(StatusCode.FAILED_TO_DESERIALIZE_ARGUMENT, str(exc)) from exc
        if der.remaining():
            raise NativeError(StatusCode.FAILED_TO_DESERIALIZE_ARGUMENT, "trailing bytes in argument")
        values.append(value)
    return values


def expect_type_args(ty_args: list[TypeTag], count: int) -> None:
    if len(ty_args) != count:
        raise NativeError(
            StatusCode.NUMBER_OF_TYPE_ARGUMENTS_MISMATCH,
            f"expected {count} type arguments, got {len(ty_args)}",
        )


def encode(value, encoder: Callable[[Serializer, object], None]) -> bytes:
    ser = Serializer()
    encoder(ser, value)
    return ser.output()


def same_type(type_tag: TypeTag, struct_tag: str) -> bool:
    """Compare by BCS encoding so address rendering differences do not matter."""
    return encode(type_tag, Serializer.struct) == encode(TypeTag(StructTag.from_str(struct_tag)), Serializer.struct)


def _require_sender(ctx: NativeContext) -> AccountAddress:
    if ctx.sender is None:
        raise NativeError(StatusCode.UNEXPECTED_ERROR_FROM_KNOWN_MOVE_FUNCTION, "entry function needs a signer")
    return ctx.sender


# ── Framework entry functions ────────────────────────────────────────────────


def aptos_account_transfer(ctx: NativeContext, ty_args: list[TypeTag], args: list[bytes]) -> None:
    expect_type_args(ty_args, 0)
    to, amount = decode_args(args, AccountAddress.deserialize, Deserializer.u64)
    sender = _require_sender(ctx)
    if not ctx.account_exists(to):
        ctx.create_account(to)
    ctx.withdraw(sender, amount)
    ctx.deposit(to, amount)
    ctx.emit(
        "0x1::fungible_asset::Withdraw",
        encode(sender, Serializer.struct) + encode(amount, Serializer.u64),
    )
    ctx.emit(
        "0x1::fungible_asset::Deposit",
        encode(to, Serializer.struct) + encode(amount, Serializer.u64),
    )


def aptos_account_create_account(ctx: NativeContext, ty_args: list[TypeTag], args: list[bytes]) -> None:
    expect_type_args(ty_args, 0)
    (auth_key,) = decode_args(args, AccountAddress.deserialize)
    ctx.create_account(auth_key)


def code_publish_package_txn(ctx: NativeContext, ty_args: list[TypeTag], args: list[bytes]) -> None:
    expect_type_args(ty_args, 0)
    metadata_bytes, code = decode_args(
        args,
        Deserializer.to_bytes,
        lambda der: der.sequence(Deserializer.to_bytes),
    )
    sender = _require_sender(ctx)
    try:
        package = PackageMetadata.from_bytes(metadata_bytes)
    except Exception as exc:
        raise NativeError(StatusCode.FAILED_TO_DESERIALIZE_ARGUMENT, f"bad package metadata: {exc}") from exc

    if len(package.modules) != len(code):
        # code::EMODULE_MISSING
        raise MoveAbort("0x1::code", error_code(_INVALID_ARGUMENT, 4))

    registry = ctx.read_resource(sender, PackageRegistryResource) or PackageRegistryResource()
    registry.upsert(package)
    ctx.write_resource(sender, registry)
    for module, bytecode in zip(package.modules, code):
        ctx.publish_module(sender, module.name, bytecode)
    ctx.emit("0x1::code::PublishPackage", encode(sender, Serializer.struct) + encode(package.name, Serializer.str))
    logger.debug(
        "Published package %s (%d modules) at %s",
        package.name,
        len(code),
        address_hex(sender),
    )


# ── Framework view functions ─────────────────────────────────────────────────


def account_exists_at(ctx: NativeContext, ty_args: list[TypeTag], args: list[bytes]) -> list[bytes]:
    expect_type_args(ty_args, 0)
    (address,) = decode_args(args, AccountAddress.deserialize)
    return [encode(ctx.account_exists(address), Serializer.bool)]


def account_get_sequence_number(ctx: NativeContext, ty_args: list[TypeTag], args: list[bytes]) -> list[bytes]:
    expect_type_args(ty_args, 0)
    (address,) = decode_args(args, AccountAddress.deserialize)
    account = ctx.read_resource(address, AccountResource)
    if account is None:
        raise MoveAbort("0x1::account", error_code(_NOT_FOUND, 2))
    return [encode(account.sequence_number, Serializer.u64)]


def coin_balance(ctx: NativeContext, ty_args: list[TypeTag], args: list[bytes]) -> list[bytes]:
    expect_type_args(ty_args, 1)
    (owner,) = decode_args(args, AccountAddress.deserialize)
    if not same_type(ty_args[0], APTOS_COIN_TAG):
        # Only the paired APT fungible asset is modelled
        raise MoveAbort("0x1::coin", error_code(_NOT_FOUND, 6))
    return [encode(ctx.fungible_balance(owner) or 0, Serializer.u64)]


def primary_fungible_store_balance(ctx: NativeContext, ty_args: list[TypeTag], args: list[bytes]) -> list[bytes]:
    expect_type_args(ty_args, 1)
    owner, metadata = decode_args(args, AccountAddress.deserialize, AccountAddress.deserialize)
    return [encode(ctx.fungible_balance(owner, metadata) or 0, Serializer.u64)]


FRAMEWORK_ENTRY_FUNCTIONS: dict[str, NativeFunction] = {
    "0x1::aptos_account::transfer": aptos_account_transfer,
    "0x1::aptos_account::create_account": aptos_account_create_account,
    "0x1::code::publish_package_txn": code_publish_package_txn,
}

FRAMEWORK_VIEW_FUNCTIONS: dict[str, NativeFunction] = {
    "0x1::account::exists_at": account_exists_at,
    "0x1::account::get_sequence_number": account_get_sequence_number,
    "0x1::coin::balance": coin_balance,
    "0x1::primary_fungible_store::balance": primary_fungible_store_balance,
}


def member_key(address: AccountAddress | bytes, module_name: str, function: str) -> str:
    return f"{short_address(address)}::{module_name}::{function}"
