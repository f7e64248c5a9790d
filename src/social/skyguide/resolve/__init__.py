"""
Identity Resolution

This package provides utilities for resolving AT Protocol identifiers (DIDs, handles)
to their canonical forms, implementing both DNS-based and HTTP-based resolution methods.

Key Components:
- handle.py: Handle and DID resolution implementation
- __main__.py: Command line entry point, ``python -m social.skyguide.resolve``
"""
