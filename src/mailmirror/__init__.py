"""Incremental mailbox mirror for Gmail-style history feeds."""

__version__ = "0.1.0"
