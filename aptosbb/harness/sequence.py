"""Local sequence numbers for accounts driven by the harness."""

from __future__ import annotations

from aptos_sdk.account_address import AccountAddress


class SequenceLedger:
    """Maps account address to the next sequence number the harness will use.

    Counters are advanced on every submission, whatever the outcome, so they
    count attempts rather than successes. Addresses never seen before start
    at 0.
    """

    def __init__(self) -> None:
        self._counters: dict[bytes, int] = {}

    def register(self, address: AccountAddress, start: int = 0) -> None:
        self._counters[address.address] = start

    def is_registered(self, address: AccountAddress) -> bool:
        return address.address in self._counters

    def peek(self, address: AccountAddress) -> int:
        return self._counters.get(address.address, 0)

    def next(self, address: AccountAddress) -> int:
        """Return the current counter for ``address`` and advance it."""
        current = self._counters.get(address.address, 0)
        self._counters[address.address] = current + 1
        return current

    def __len__(self) -> int:
        return len(self._counters)

    def __contains__(self, address: AccountAddress) -> bool:
        return self.is_registered(address)
