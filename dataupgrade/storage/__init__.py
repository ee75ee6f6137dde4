"""Reference row stores.

Both implement the RowStore protocol and the get_row/get_rows read path
wrapped by EffectiveViewStore.
"""

from .memory import InMemoryRowStore
from .sqlite import SQLiteRowStore, validate_table_name

__all__ = [
    "InMemoryRowStore",
    "SQLiteRowStore",
    "validate_table_name",
]
