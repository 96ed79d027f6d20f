"""Typed Move resources of the Aptos framework used by the harness.

Each resource knows its struct tag and its BCS layout, so the executor can
hand out typed values and the natives can rewrite them.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import ClassVar, TypeVar

from aptos_sdk.account_address import AccountAddress
from aptos_sdk.bcs import Deserializer, Serializer
from aptos_sdk.type_tag import StructTag

from aptosbb.core.move import parse_address

T = TypeVar("T", bound="MoveResource")

APT_METADATA_ADDRESS = parse_address("0xa")
OBJECT_GROUP_TAG = "0x1::object::ObjectGroup"

# Derivation scheme byte for primary fungible stores (object::create_user_derived_object)
_DERIVE_OBJECT_FROM_ADDRESS = b"\xfc"


def primary_store_address(owner: AccountAddress, metadata: AccountAddress) -> AccountAddress:
    """Address of ``owner``'s primary fungible store for asset ``metadata``."""
    digest = hashlib.sha3_256(owner.address + metadata.address + _DERIVE_OBJECT_FROM_ADDRESS)
    return AccountAddress(digest.digest())


def primary_apt_store(owner: AccountAddress) -> AccountAddress:
    return primary_store_address(owner, APT_METADATA_ADDRESS)


def _serialize_option_address(ser: Serializer, value: AccountAddress | None) -> None:
    if value is None:
        ser.u8(0)
    else:
        ser.u8(1)
        value.serialize(ser)


def _deserialize_option_address(der: Deserializer) -> AccountAddress | None:
    return AccountAddress.deserialize(der) if der.u8() else None


class MoveResource:
    """Base class for resources with a fixed struct tag and BCS layout."""

    STRUCT_TAG: ClassVar[str]

    @classmethod
    def struct_tag(cls) -> StructTag:
        return StructTag.from_str(cls.STRUCT_TAG)

    @classmethod
    def deserialize(cls: type[T], deserializer: Deserializer) -> T:
        raise NotImplementedError

    def serialize(self, serializer: Serializer) -> None:
        raise NotImplementedError

    @classmethod
    def from_bytes(cls: type[T], data: bytes) -> T:
        return cls.deserialize(Deserializer(data))

    def to_bytes(self) -> bytes:
        ser = Serializer()
        self.serialize(ser)
        return ser.output()


# ── Account ──────────────────────────────────────────────────────────────────


@dataclass
class EventHandle:
    counter: int = 0
    creation_num: int = 0
    address: AccountAddress = field(default_factory=lambda: parse_address("0x0"))

    def serialize(self, ser: Serializer) -> None:
        ser.u64(self.counter)
        ser.u64(self.creation_num)
        self.address.serialize(ser)

    @classmethod
    def deserialize(cls, der: Deserializer) -> EventHandle:
        return cls(der.u64(), der.u64(), AccountAddress.deserialize(der))


@dataclass
class AccountResource(MoveResource):
    """``0x1::account::Account``."""

    STRUCT_TAG: ClassVar[str] = "0x1::account::Account"

    authentication_key: bytes
    sequence_number: int = 0
    guid_creation_num: int = 0
    coin_register_events: EventHandle = field(default_factory=EventHandle)
    key_rotation_events: EventHandle = field(default_factory=EventHandle)
    rotation_capability_offer: AccountAddress | None = None
    signer_capability_offer: AccountAddress | None = None

    @classmethod
    def new(cls, address: AccountAddress, authentication_key: bytes) -> AccountResource:
        return cls(
            authentication_key=authentication_key,
            guid_creation_num=2,
            coin_register_events=EventHandle(0, 0, address),
            key_rotation_events=EventHandle(0, 1, address),
        )

    def serialize(self, ser: Serializer) -> None:
        ser.to_bytes(self.authentication_key)
        ser.u64(self.sequence_number)
        ser.u64(self.guid_creation_num)
        self.coin_register_events.serialize(ser)
        self.key_rotation_events.serialize(ser)
        _serialize_option_address(ser, self.rotation_capability_offer)
        _serialize_option_address(ser, self.signer_capability_offer)

    @classmethod
    def deserialize(cls, der: Deserializer) -> AccountResource:
        return cls(
            authentication_key=der.to_bytes(),
            sequence_number=der.u64(),
            guid_creation_num=der.u64(),
            coin_register_events=EventHandle.deserialize(der),
            key_rotation_events=EventHandle.deserialize(der),
            rotation_capability_offer=_deserialize_option_address(der),
            signer_capability_offer=_deserialize_option_address(der),
        )


# ── Objects and fungible assets ─────────────────────────────────────────────


@dataclass
class ObjectCoreResource(MoveResource):
    """``0x1::object::ObjectCore``."""

    STRUCT_TAG: ClassVar[str] = "0x1::object::ObjectCore"

    owner: AccountAddress
    guid_creation_num: int = 0x4000000000000
    allow_ungated_transfer: bool = False
    transfer_events: EventHandle = field(default_factory=EventHandle)

    def serialize(self, ser: Serializer) -> None:
        ser.u64(self.guid_creation_num)
        self.owner.serialize(ser)
        ser.bool(self.allow_ungated_transfer)
        self.transfer_events.serialize(ser)

    @classmethod
    def deserialize(cls, der: Deserializer) -> ObjectCoreResource:
        guid_creation_num = der.u64()
        owner = AccountAddress.deserialize(der)
        return cls(
            owner=owner,
            guid_creation_num=guid_creation_num,
            allow_ungated_transfer=der.bool(),
            transfer_events=EventHandle.deserialize(der),
        )


@dataclass
class FungibleStoreResource(MoveResource):
    """``0x1::fungible_asset::FungibleStore``."""

    STRUCT_TAG: ClassVar[str] = "0x1::fungible_asset::FungibleStore"

    metadata: AccountAddress
    balance: int = 0
    frozen: bool = False

    def serialize(self, ser: Serializer) -> None:
        self.metadata.serialize(ser)
        ser.u64(self.balance)
        ser.bool(self.frozen)

    @classmethod
    def deserialize(cls, der: Deserializer) -> FungibleStoreResource:
        return cls(AccountAddress.deserialize(der), der.u64(), der.bool())


class ResourceGroup:
    """Members of a resource group, keyed by struct tag (a BCS ``BTreeMap``)."""

    def __init__(self, members: dict[str, tuple[StructTag, bytes]] | None = None) -> None:
        self._members: dict[str, tuple[StructTag, bytes]] = dict(members or {})

    def get(self, tag: StructTag | str) -> bytes | None:
        entry = self._members.get(str(tag))
        return entry[1] if entry else None

    def put(self, tag: StructTag, data: bytes) -> None:
        self._members[str(tag)] = (tag, data)

    def remove(self, tag: StructTag | str) -> None:
        self._members.pop(str(tag), None)

    def __len__(self) -> int:
        return len(self._members)

    def to_bytes(self) -> bytes:
        encoded = []
        for tag, data in self._members.values():
            key = Serializer()
            tag.serialize(key)
            encoded.append((key.output(), data))
        encoded.sort(key=lambda item: item[0])

        ser = Serializer()
        ser.uleb128(len(encoded))
        for key_bytes, data in encoded:
            ser.fixed_bytes(key_bytes)
            ser.to_bytes(data)
        return ser.output()

    @classmethod
    def from_bytes(cls, data: bytes) -> ResourceGroup:
        der = Deserializer(data)
        group = cls()
        for _ in range(der.uleb128()):
            tag = StructTag.deserialize(der)
            group.put(tag, der.to_bytes())
        return group


# ── Code ─────────────────────────────────────────────────────────────────────


@dataclass
class ModuleMetadata:
    name: str
    source: bytes = b""
    source_map: bytes = b""

    def serialize(self, ser: Serializer) -> None:
        ser.str(self.name)
        ser.to_bytes(self.source)
        ser.to_bytes(self.source_map)
        ser.u8(0)  # extension: Option<Any>

    @classmethod
    def deserialize(cls, der: Deserializer) -> ModuleMetadata:
        module = cls(der.str(), der.to_bytes(), der.to_bytes())
        _skip_option_any(der)
        return module


@dataclass
class PackageDep:
    account: AccountAddress
    package_name: str

    def serialize(self, ser: Serializer) -> None:
        self.account.serialize(ser)
        ser.str(self.package_name)

    @classmethod
    def deserialize(cls, der: Deserializer) -> PackageDep:
        return cls(AccountAddress.deserialize(der), der.str())


def _skip_option_any(der: Deserializer) -> None:
    if der.u8():
        der.str()  # Any.type_name
        der.to_bytes()  # Any.data


@dataclass
class PackageMetadata:
    """``0x1::code::PackageMetadata``, as produced by the Move package builder."""

    name: str
    modules: list[ModuleMetadata] = field(default_factory=list)
    upgrade_policy: int = 1  # compatible
    upgrade_number: int = 0
    source_digest: str = ""
    manifest: bytes = b""
    deps: list[PackageDep] = field(default_factory=list)

    def serialize(self, ser: Serializer) -> None:
        ser.str(self.name)
        ser.u8(self.upgrade_policy)
        ser.u64(self.upgrade_number)
        ser.str(self.source_digest)
        ser.to_bytes(self.manifest)
        ser.sequence(self.modules, Serializer.struct)
        ser.sequence(self.deps, Serializer.struct)
        ser.u8(0)  # extension: Option<Any>

    @classmethod
    def deserialize(cls, der: Deserializer) -> PackageMetadata:
        name = der.str()
        upgrade_policy = der.u8()
        upgrade_number = der.u64()
        source_digest = der.str()
        manifest = der.to_bytes()
        modules = der.sequence(ModuleMetadata.deserialize)
        deps = der.sequence(PackageDep.deserialize)
        _skip_option_any(der)
        return cls(
            name=name,
            modules=modules,
            upgrade_policy=upgrade_policy,
            upgrade_number=upgrade_number,
            source_digest=source_digest,
            manifest=manifest,
            deps=deps,
        )

    def to_bytes(self) -> bytes:
        ser = Serializer()
        self.serialize(ser)
        return ser.output()

    @classmethod
    def from_bytes(cls, data: bytes) -> PackageMetadata:
        return cls.deserialize(Deserializer(data))


@dataclass
class PackageRegistryResource(MoveResource):
    """``0x1::code::PackageRegistry``."""

    STRUCT_TAG: ClassVar[str] = "0x1::code::PackageRegistry"

    packages: list[PackageMetadata] = field(default_factory=list)

    def serialize(self, ser: Serializer) -> None:
        ser.sequence(self.packages, Serializer.struct)

    @classmethod
    def deserialize(cls, der: Deserializer) -> PackageRegistryResource:
        return cls(der.sequence(PackageMetadata.deserialize))

    def upsert(self, package: PackageMetadata) -> None:
        for i, existing in enumerate(self.packages):
            if existing.name == package.name:
                package.upgrade_number = existing.upgrade_number + 1
                self.packages[i] = package
                return
        self.packages.append(package)
