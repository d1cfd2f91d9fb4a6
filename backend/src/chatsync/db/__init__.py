from chatsync.db.postgres import Database, db

__all__ = ["Database", "db"]
