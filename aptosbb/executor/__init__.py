"""Execution engine over forked ledger state.

Implements:
  - Snapshot reads pinned to a ledger version, with a session overlay
  - Ledger-compatible state keys and framework resource layouts
  - Admission checks, sequence numbers and gas charging
  - Python natives standing in for framework and published Move functions
"""
