"""Move addresses, identifiers and fully-qualified member references."""

from __future__ import annotations

import re
from dataclasses import dataclass

from aptos_sdk.account_address import AccountAddress

from aptosbb.core.errors import IdentifierError

ADDRESS_LENGTH = 32

_IDENTIFIER_RE = re.compile(r"^(?:[A-Za-z][A-Za-z0-9_]*|_[A-Za-z0-9_]+)$")
_HEX_RE = re.compile(r"^(0x)?[0-9a-fA-F]{1,64}$")


def parse_address(value: str | bytes | AccountAddress) -> AccountAddress:
    """Accept short (``0x1``) or long hex forms, raw bytes, or an address."""
    if isinstance(value, AccountAddress):
        return value
    if isinstance(value, bytes):
        if len(value) != ADDRESS_LENGTH:
            raise IdentifierError(f"Address must be {ADDRESS_LENGTH} bytes, got {len(value)}")
        return AccountAddress(value)
    text = value.strip()
    if not _HEX_RE.match(text):
        raise IdentifierError(f"Invalid account address: {value!r}")
    if text.startswith("0x"):
        text = text[2:]
    return AccountAddress(bytes.fromhex(text.zfill(ADDRESS_LENGTH * 2)))


def address_hex(address: AccountAddress | bytes) -> str:
    """Long-form ``0x``-prefixed hex, the form every REST endpoint accepts."""
    raw = address if isinstance(address, bytes) else address.address
    return f"0x{raw.hex()}"


def short_address(address: AccountAddress | bytes) -> str:
    """``0x1`` style rendering used in member ids and logs."""
    raw = address if isinstance(address, bytes) else address.address
    return f"0x{raw.hex().lstrip('0') or '0'}"


def is_valid_identifier(name: str) -> bool:
    return bool(_IDENTIFIER_RE.match(name))


def validate_identifier(name: str, what: str = "identifier") -> str:
    if not is_valid_identifier(name):
        raise IdentifierError(f"Invalid {what}: {name!r}")
    return name


@dataclass(frozen=True)
class MemberId:
    """A fully-qualified function reference ``address::module::function``."""

    address: bytes
    module_name: str
    member_name: str

    @classmethod
    def parse(cls, text: str) -> MemberId:
        parts = text.split("::")
        if len(parts) != 3:
            raise IdentifierError(f"Expected 'address::module::function', got {text!r}")
        address, module_name, member_name = parts
        return cls(
            address=parse_address(address).address,
            module_name=validate_identifier(module_name, "module name"),
            member_name=validate_identifier(member_name, "function name"),
        )

    @property
    def module_id(self) -> str:
        return f"{short_address(self.address)}::{self.module_name}"

    def __str__(self) -> str:
        return f"{self.module_id}::{self.member_name}"
