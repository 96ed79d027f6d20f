"""State keys, laid out the way the ledger encodes them.

A key is either an access path (an address plus a BCS-encoded ``Path`` naming
a module, a resource or a resource group), a table item, or raw bytes.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from aptos_sdk.account_address import AccountAddress
from aptos_sdk.bcs import Deserializer, Serializer
from aptos_sdk.transactions import ModuleId
from aptos_sdk.type_tag import StructTag

from aptosbb.core.move import address_hex, parse_address


class StateKeyKind(enum.Enum):
    MODULE = "module"
    RESOURCE = "resource"
    RESOURCE_GROUP = "resource_group"
    TABLE_ITEM = "table_item"
    RAW = "raw"


# StateKeyInner variants
_ACCESS_PATH = 0
_TABLE_ITEM = 1
_RAW = 2

# Path variants inside an access path
_PATH_CODE = 0
_PATH_RESOURCE = 1
_PATH_RESOURCE_GROUP = 2

_PATH_KINDS = {
    _PATH_CODE: StateKeyKind.MODULE,
    _PATH_RESOURCE: StateKeyKind.RESOURCE,
    _PATH_RESOURCE_GROUP: StateKeyKind.RESOURCE_GROUP,
}


def as_struct_tag(tag: StructTag | str) -> StructTag:
    return tag if isinstance(tag, StructTag) else StructTag.from_str(tag)


def _encode_path(variant: int, body: StructTag | ModuleId) -> bytes:
    ser = Serializer()
    ser.uleb128(variant)
    body.serialize(ser)
    return ser.output()


@dataclass(frozen=True)
class AccessPath:
    """An address plus the BCS-encoded path of a value stored under it."""

    address: bytes
    path: bytes

    @classmethod
    def resource_access_path(cls, address: AccountAddress | str, struct_tag: StructTag | str) -> AccessPath:
        return cls(
            parse_address(address).address,
            _encode_path(_PATH_RESOURCE, as_struct_tag(struct_tag)),
        )

    @classmethod
    def resource_group_access_path(cls, address: AccountAddress | str, group_tag: StructTag | str) -> AccessPath:
        return cls(
            parse_address(address).address,
            _encode_path(_PATH_RESOURCE_GROUP, as_struct_tag(group_tag)),
        )

    @classmethod
    def code_access_path(cls, address: AccountAddress | str, module_name: str) -> AccessPath:
        addr = parse_address(address)
        return cls(addr.address, _encode_path(_PATH_CODE, ModuleId(addr, module_name)))

    def serialize(self, serializer: Serializer) -> None:
        serializer.fixed_bytes(self.address)
        serializer.to_bytes(self.path)

    def to_bytes(self) -> bytes:
        ser = Serializer()
        self.serialize(ser)
        return ser.output()


@dataclass(frozen=True)
class StateKey:
    """Key of a single state value.

    ``path`` holds the BCS-encoded ``Path`` for access-path keys, the item key
    for table items and the raw bytes for raw keys. ``label`` is the
    human-readable struct tag or module name and is not part of identity.
    """

    kind: StateKeyKind
    address: bytes = b""
    path: bytes = b""
    handle: bytes = b""
    label: str = field(default="", compare=False)

    # ── Constructors ─────────────────────────────────────────────────────

    @classmethod
    def resource(cls, address: AccountAddress | str, struct_tag: StructTag | str) -> StateKey:
        tag = as_struct_tag(struct_tag)
        ap = AccessPath.resource_access_path(address, tag)
        return cls(StateKeyKind.RESOURCE, ap.address, ap.path, label=str(tag))

    @classmethod
    def resource_group(cls, address: AccountAddress | str, group_tag: StructTag | str) -> StateKey:
        tag = as_struct_tag(group_tag)
        ap = AccessPath.resource_group_access_path(address, tag)
        return cls(StateKeyKind.RESOURCE_GROUP, ap.address, ap.path, label=str(tag))

    @classmethod
    def module(cls, address: AccountAddress | str, module_name: str) -> StateKey:
        ap = AccessPath.code_access_path(address, module_name)
        return cls(StateKeyKind.MODULE, ap.address, ap.path, label=module_name)

    @classmethod
    def table_item(cls, handle: AccountAddress | str, key: bytes) -> StateKey:
        return cls(StateKeyKind.TABLE_ITEM, path=key, handle=parse_address(handle).address)

    @classmethod
    def raw(cls, data: bytes) -> StateKey:
        return cls(StateKeyKind.RAW, path=data)

    @classmethod
    def from_access_path(cls, access_path: AccessPath) -> StateKey:
        der = Deserializer(access_path.path)
        variant = der.uleb128()
        kind = _PATH_KINDS.get(variant)
        if kind is None:
            raise ValueError(f"Unknown access path variant {variant}")
        if kind == StateKeyKind.MODULE:
            label = ModuleId.deserialize(der).name
        else:
            label = str(StructTag.deserialize(der))
        return cls(kind, access_path.address, access_path.path, label=label)

    # ── Codec ────────────────────────────────────────────────────────────

    def encode(self) -> bytes:
        ser = Serializer()
        if self.kind == StateKeyKind.TABLE_ITEM:
            ser.uleb128(_TABLE_ITEM)
            ser.fixed_bytes(self.handle)
            ser.to_bytes(self.path)
        elif self.kind == StateKeyKind.RAW:
            ser.uleb128(_RAW)
            ser.to_bytes(self.path)
        else:
            ser.uleb128(_ACCESS_PATH)
            AccessPath(self.address, self.path).serialize(ser)
        return ser.output()

    @classmethod
    def decode(cls, data: bytes) -> StateKey:
        der = Deserializer(data)
        variant = der.uleb128()
        if variant == _ACCESS_PATH:
            address = der.fixed_bytes(32)
            return cls.from_access_path(AccessPath(address, der.to_bytes()))
        if variant == _TABLE_ITEM:
            handle = der.fixed_bytes(32)
            return cls(StateKeyKind.TABLE_ITEM, path=der.to_bytes(), handle=handle)
        if variant == _RAW:
            return cls(StateKeyKind.RAW, path=der.to_bytes())
        raise ValueError(f"Unknown state key variant {variant}")

    @classmethod
    def decode_access_path(cls, data: bytes) -> StateKey:
        """Decode a bare BCS ``AccessPath`` (without the state key tag)."""
        der = Deserializer(data)
        address = der.fixed_bytes(32)
        return cls.from_access_path(AccessPath(address, der.to_bytes()))

    def __str__(self) -> str:
        if self.kind == StateKeyKind.TABLE_ITEM:
            return f"table_item({address_hex(self.handle)}, 0x{self.path.hex()})"
        if self.kind == StateKeyKind.RAW:
            return f"raw(0x{self.path.hex()})"
        return f"{self.kind.value}({address_hex(self.address)}, {self.label})"
