"""
recurgent — persistence layer

Purpose
- SQLite state DB access, migrations and transaction boundaries shared by the
  artifact store, role-profile registry and governance proposal store.

Non-functional requirements
- SQLite-first; no heavy DB dependencies.
"""

from recurgent.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
    utc_now_iso,
)

__all__ = [
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "utc_now_iso",
]
