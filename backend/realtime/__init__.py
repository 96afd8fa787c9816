"""Marketplace real-time communication core.

Server side: room registry, connection sessions, message ingestion and the
unread/notification ledger behind one FastAPI application
(``realtime.main.create_app``).

Client side: ``realtime.client`` holds the reconciliation store and the
session supervisor used by front-ends to keep a consistent view of each
conversation across reconnects.
"""

__version__ = "0.1.0"
