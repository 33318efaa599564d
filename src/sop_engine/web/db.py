from functools import lru_cache

from ..config import get_db_path
from ..engine import SOPEngine
from ..store import SQLiteStore


@lru_cache(maxsize=None)
def _engine_for(db_path: str) -> SOPEngine:
    return SOPEngine(SQLiteStore(db_path))


def get_engine() -> SOPEngine:
    return _engine_for(get_db_path())
