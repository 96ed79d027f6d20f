"""Shared enums and types used across the harness."""

from __future__ import annotations

import enum
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ────────────────────────────────────────────────────────────────────


class StatusCode(str, enum.Enum):
    """VM status codes surfaced by the execution engine."""

    ABORTED = "ABORTED"
    LINKER_ERROR = "LINKER_ERROR"
    FUNCTION_RESOLUTION_FAILURE = "FUNCTION_RESOLUTION_FAILURE"
    NUMBER_OF_ARGUMENTS_MISMATCH = "NUMBER_OF_ARGUMENTS_MISMATCH"
    NUMBER_OF_TYPE_ARGUMENTS_MISMATCH = "NUMBER_OF_TYPE_ARGUMENTS_MISMATCH"
    FAILED_TO_DESERIALIZE_ARGUMENT = "FAILED_TO_DESERIALIZE_ARGUMENT"
    SEQUENCE_NUMBER_TOO_OLD = "SEQUENCE_NUMBER_TOO_OLD"
    SEQUENCE_NUMBER_TOO_NEW = "SEQUENCE_NUMBER_TOO_NEW"
    TRANSACTION_EXPIRED = "TRANSACTION_EXPIRED"
    BAD_CHAIN_ID = "BAD_CHAIN_ID"
    SENDING_ACCOUNT_DOES_NOT_EXIST = "SENDING_ACCOUNT_DOES_NOT_EXIST"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVALID_AUTH_KEY = "INVALID_AUTH_KEY"
    INSUFFICIENT_BALANCE_FOR_TRANSACTION_FEE = "INSUFFICIENT_BALANCE_FOR_TRANSACTION_FEE"
    MAX_GAS_UNITS_BELOW_MIN_TRANSACTION_GAS_UNITS = "MAX_GAS_UNITS_BELOW_MIN_TRANSACTION_GAS_UNITS"
    FEATURE_UNDER_GATING = "FEATURE_UNDER_GATING"
    UNEXPECTED_ERROR_FROM_KNOWN_MOVE_FUNCTION = "UNEXPECTED_ERROR_FROM_KNOWN_MOVE_FUNCTION"
    STORAGE_ERROR = "STORAGE_ERROR"


class ExecutionStatusKind(str, enum.Enum):
    """How a kept transaction finished executing."""

    SUCCESS = "success"
    OUT_OF_GAS = "out_of_gas"
    MOVE_ABORT = "move_abort"
    EXECUTION_FAILURE = "execution_failure"
    MISCELLANEOUS_ERROR = "miscellaneous_error"


class TransactionStatusKind(str, enum.Enum):
    """Whether a transaction is kept in the ledger, discarded or retried."""

    KEEP = "keep"
    DISCARD = "discard"
    RETRY = "retry"


class BalanceState(str, enum.Enum):
    """Tri-state result of resolving an account balance."""

    NO_STORE = "no_store"
    ZERO = "zero"
    NONZERO = "nonzero"


# ── Transaction status ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class ExecutionStatus:
    """Execution result of a kept transaction."""

    kind: ExecutionStatusKind
    location: str | None = None
    abort_code: int | None = None
    status_code: StatusCode | None = None
    function: str | None = None

    @classmethod
    def success(cls) -> ExecutionStatus:
        return cls(ExecutionStatusKind.SUCCESS)

    @classmethod
    def move_abort(cls, location: str, code: int) -> ExecutionStatus:
        return cls(ExecutionStatusKind.MOVE_ABORT, location=location, abort_code=code)

    @classmethod
    def miscellaneous(cls, code: StatusCode | None) -> ExecutionStatus:
        return cls(ExecutionStatusKind.MISCELLANEOUS_ERROR, status_code=code)

    def __str__(self) -> str:
        if self.kind == ExecutionStatusKind.MOVE_ABORT:
            return f"MoveAbort({self.location}, {self.abort_code})"
        if self.kind == ExecutionStatusKind.MISCELLANEOUS_ERROR:
            code = self.status_code.value if self.status_code else None
            return f"MiscellaneousError({code})"
        if self.kind == ExecutionStatusKind.EXECUTION_FAILURE:
            return f"ExecutionFailure({self.location}::{self.function})"
        return self.kind.name.title().replace("_", "")


@dataclass(frozen=True)
class TransactionStatus:
    """Outcome status of a submitted transaction.

    Engine-level failures are carried here instead of being raised, so every
    submission attempt yields a value the caller can inspect.
    """

    kind: TransactionStatusKind
    execution: ExecutionStatus | None = None
    discard_code: StatusCode | None = None

    @classmethod
    def keep(cls, execution: ExecutionStatus) -> TransactionStatus:
        return cls(TransactionStatusKind.KEEP, execution=execution)

    @classmethod
    def discard(cls, code: StatusCode) -> TransactionStatus:
        return cls(TransactionStatusKind.DISCARD, discard_code=code)

    @classmethod
    def build_failure(cls) -> TransactionStatus:
        """Synthetic status for a package that never made it to submission."""
        return cls.keep(ExecutionStatus.miscellaneous(StatusCode.ABORTED))

    def is_kept(self) -> bool:
        return self.kind == TransactionStatusKind.KEEP

    def is_discarded(self) -> bool:
        return self.kind == TransactionStatusKind.DISCARD

    def is_success(self) -> bool:
        return (
            self.kind == TransactionStatusKind.KEEP
            and self.execution is not None
            and self.execution.kind == ExecutionStatusKind.SUCCESS
        )

    def __str__(self) -> str:
        if self.kind == TransactionStatusKind.KEEP:
            return f"Keep({self.execution})"
        if self.kind == TransactionStatusKind.DISCARD:
            code = self.discard_code.value if self.discard_code else None
            return f"Discard({code})"
        return "Retry"


# ── Ledger snapshot ──────────────────────────────────────────────────────────


class PinnedSnapshot(BaseModel):
    """Ledger metadata the harness is pinned to. Immutable once constructed."""

    model_config = ConfigDict(frozen=True)

    version: int = Field(ge=0)
    chain_id: int = Field(ge=0, le=255)
    timestamp_usecs: int = Field(ge=0)
    node_url: str = ""

    @property
    def timestamp_secs(self) -> int:
        return self.timestamp_usecs // 1_000_000


@dataclass(frozen=True)
class BalanceReading:
    """Balance of an account together with whether a store was found at all."""

    state: BalanceState
    amount: int = 0

    @classmethod
    def from_store(cls, amount: int | None) -> BalanceReading:
        if amount is None:
            return cls(BalanceState.NO_STORE)
        if amount == 0:
            return cls(BalanceState.ZERO)
        return cls(BalanceState.NONZERO, amount)
