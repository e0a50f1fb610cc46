"""Message storage module.

Messages and the counterparty profile cache live in a local DuckDB
database. Conversations are derived from messages on demand.
"""

from .service import MessageStore

__all__ = ["MessageStore"]
