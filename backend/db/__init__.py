from .sqlite_client import SQLiteItemStore, agent_db_path, open_item_store

__all__ = ["SQLiteItemStore", "agent_db_path", "open_item_store"]
