"""Built-in scenarios runnable with ``aptosbb <mode> --scenario``.

A scenario is any callable taking the constructed ``AptosBB`` session. It may
be a coroutine function; the CLI awaits it.
"""

from __future__ import annotations

import importlib
import logging
from typing import Any, Callable

from aptos_sdk.bcs import Serializer

from aptosbb.core.move import address_hex
from aptosbb.harness.payloads import transfer_payload
from aptosbb.harness.session import AptosBB

logger = logging.getLogger(__name__)

DEFAULT_SCENARIO = "aptosbb.harness.scenarios:smoke"

Scenario = Callable[[AptosBB], Any]


def load_scenario(spec: str) -> Scenario:
    """Resolve ``package.module:function`` to a callable."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Scenario must look like 'module:function', got {spec!r}")
    module = importlib.import_module(module_name)
    scenario = getattr(module, attr, None)
    if not callable(scenario):
        raise ValueError(f"{spec} is not callable")
    return scenario


def smoke(aptosbb: AptosBB) -> None:
    """Exercise the fork end to end: accounts, a transfer and a view call."""
    alice = aptosbb.create_account()
    bob = aptosbb.create_account()
    amount = 1_000_000

    before = aptosbb.read_aptos_balance(bob.address())
    status = aptosbb.run_transaction(alice, transfer_payload(bob.address(), amount))
    after = aptosbb.read_aptos_balance(bob.address())
    logger.info("Transfer %d octas to %s: %s", amount, address_hex(bob.address()), status)
    if not status.is_success() or after - before != amount:
        raise RuntimeError(f"Transfer check failed: {status}, balance {before} -> {after}")

    ser = Serializer()
    alice.address().serialize(ser)
    values = aptosbb.execute_view_function("0x1", "account", "exists_at", [], [ser.output()])
    logger.info("0x1::account::exists_at(%s) -> 0x%s", address_hex(alice.address()), values[0].hex())
