"""
Key-Value Stores

Storage interfaces for the two pieces of shared mutable state in the OAuth
core, and the in-memory implementations used by a single process.

Key Components:
- base.py: StateStore and SessionStore abstract interfaces
- memory.py: asyncio-safe dict-backed implementations

The interfaces are deliberately small (put/get/delete) so a deployment can
provide its own external store without touching the flow controller. Stores
only guarantee single-key atomicity; there are no cross-key invariants.
"""
