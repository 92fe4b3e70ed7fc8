from nuggets.db.database import Database

__all__ = ["Database"]
