"""Exception taxonomy for the harness.

Construction-time failures (connectivity) propagate to the caller. Failures of
individual transactions never raise: they are reported in the
``TransactionStatus`` of the returned output.
"""

from __future__ import annotations

from typing import Any


class AptosBBError(Exception):
    """Base exception for harness errors."""


class ConnectivityError(AptosBBError):
    """The remote node was unreachable or returned malformed data."""

    def __init__(self, message: str, status_code: int | None = None, response: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class BuildError(AptosBBError):
    """A Move package failed to compile."""

    def __init__(self, message: str, package_dir: str = "", stderr: str = ""):
        super().__init__(message)
        self.package_dir = package_dir
        self.stderr = stderr


class IdentifierError(AptosBBError, ValueError):
    """A module or function reference is not syntactically valid."""


class ViewFunctionError(AptosBBError):
    """The engine reported a failure while executing a view function."""


class UnknownAccountError(AptosBBError):
    """A transaction was submitted for an address never registered with the harness."""


class VerificationWarning(UserWarning):
    """An account was created but could not be confirmed by reading it back."""
