"""Transaction payloads the harness knows how to build."""

from __future__ import annotations

from aptos_sdk.account_address import AccountAddress
from aptos_sdk.bcs import Serializer
from aptos_sdk.transactions import EntryFunction, ModuleId, TransactionPayload
from aptos_sdk.type_tag import StructTag, TypeTag

from aptosbb.core.errors import IdentifierError
from aptosbb.core.move import parse_address, validate_identifier
from aptosbb.ingestion.move_builder import BuiltPackage

PUBLISH_FUNCTION = "publish_package_txn"


# TypeTag variant indices of the non-struct Move types
PRIMITIVE_TYPE_VARIANTS = {
    "bool": 0,
    "u8": 1,
    "u64": 2,
    "u128": 3,
    "address": 4,
    "signer": 5,
    "u16": 8,
    "u32": 9,
    "u256": 10,
}
VECTOR_VARIANT = 6


class PrimitiveTypeArg:
    """A primitive type argument such as ``u64``; encodes as its variant alone."""

    def __init__(self, name: str) -> None:
        if name not in PRIMITIVE_TYPE_VARIANTS:
            raise IdentifierError(f"Unknown primitive type: {name!r}")
        self.name = name

    def variant(self) -> int:
        return PRIMITIVE_TYPE_VARIANTS[self.name]

    def serialize(self, serializer: Serializer) -> None:
        pass

    def __eq__(self, other: object) -> bool:
        return isinstance(other, PrimitiveTypeArg) and other.name == self.name

    def __str__(self) -> str:
        return self.name


class VectorTypeArg:
    """``vector<T>`` as a type argument."""

    def __init__(self, element: TypeTag) -> None:
        self.element = element

    def variant(self) -> int:
        return VECTOR_VARIANT

    def serialize(self, serializer: Serializer) -> None:
        serializer.struct(self.element)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, VectorTypeArg) and other.element == self.element

    def __str__(self) -> str:
        return f"vector<{self.element}>"


def parse_type_tag(text: str) -> TypeTag:
    """Parse ``u64``, ``address``, ``vector<u8>`` or a struct tag string."""
    text = text.strip()
    if text in PRIMITIVE_TYPE_VARIANTS:
        return TypeTag(PrimitiveTypeArg(text))
    if text.startswith("vector<") and text.endswith(">"):
        return TypeTag(VectorTypeArg(parse_type_tag(text[len("vector<"):-1])))
    try:
        return TypeTag(StructTag.from_str(text))
    except Exception as exc:
        raise IdentifierError(f"Invalid type argument: {text!r}") from exc


def as_type_tag(value: TypeTag | StructTag | str) -> TypeTag:
    if isinstance(value, TypeTag):
        return value
    if isinstance(value, StructTag):
        return TypeTag(value)
    return parse_type_tag(value)


def module_publish_payload(package: BuiltPackage) -> TransactionPayload:
    """``0x1::code::publish_package_txn(metadata, code)`` for a built package."""
    metadata = Serializer()
    metadata.to_bytes(package.metadata_bytes)
    code = Serializer()
    code.sequence(package.extract_code(), Serializer.to_bytes)
    return entry_function_payload(
        "0x1", "code", PUBLISH_FUNCTION, [], [metadata.output(), code.output()]
    )


def entry_function_payload(
    module_address: AccountAddress | str,
    module_name: str,
    function: str,
    ty_args: list[TypeTag | StructTag | str] | None = None,
    args: list[bytes] | None = None,
) -> TransactionPayload:
    """Call ``module_address::module_name::function`` with BCS-encoded ``args``.

    Raises:
        IdentifierError: the address, module or function name is malformed.
    """
    module = ModuleId(
        parse_address(module_address),
        validate_identifier(module_name, "module name"),
    )
    entry = EntryFunction(
        module,
        validate_identifier(function, "function name"),
        [as_type_tag(tag) for tag in ty_args or []],
        list(args or []),
    )
    return TransactionPayload(entry)


def transfer_payload(to: AccountAddress, amount: int) -> TransactionPayload:
    """``0x1::aptos_account::transfer(to, amount)``."""
    recipient = Serializer()
    to.serialize(recipient)
    value = Serializer()
    value.u64(amount)
    return entry_function_payload("0x1", "aptos_account", "transfer", [], [recipient.output(), value.output()])
