"""
Database module.
Contains the Mongo connection, the task record layout and the queue core.
"""

from kiln.db.connection import (
    close_db,
    create_client,
    get_client,
    get_collection,
    get_database,
    init_db,
    ping,
)
from kiln.db.queue_core import QueueCore

__all__ = [
    "create_client",
    "get_client",
    "get_database",
    "get_collection",
    "init_db",
    "close_db",
    "ping",
    "QueueCore",
]
