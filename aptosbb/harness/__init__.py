"""Fork-and-execute harness.

Implements:
  - Per-account sequence tracking for transactions built by the harness
  - Publish and entry-function payload construction
  - The ``AptosBB`` session: account setup, submission, state and view reads
"""

from aptosbb.harness.session import AptosBB

__all__ = ["AptosBB"]
