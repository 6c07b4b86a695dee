"""
Database connection management.

Provides SQLite connections for the redemption ledger.
"""

import sqlite3
from pathlib import Path


def get_connection(db_path: str = "redeem_guard.db", timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite connection for one ledger operation.
    
    Each operation opens its own connection so concurrent redemptions never
    share cursor state. ``timeout`` bounds how long a writer waits on a lock
    held by another connection before ``sqlite3.OperationalError`` is raised.
    
    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a competing lock
        
    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=timeout)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
