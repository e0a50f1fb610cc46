"""Marketplace messaging core.

Real-time chat between customers, providers and admins:

Modules:
    - presence: process-wide registry of open connections per user
    - chat: WebSocket endpoint, message dispatch and read receipts
    - storage: DuckDB-backed message store (the storage collaborator)
    - files: attachment upload and download
    - auth: bearer token verification
    - client: client-side conversation state, optimistic sends, attachments
"""
