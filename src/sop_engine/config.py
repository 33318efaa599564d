import os

from dotenv import load_dotenv

load_dotenv()  # must come BEFORE reading env-based configuration so values are populated


def get_db_path() -> str:
    return os.environ.get("SOP_ENGINE_DB", "sop_engine.db")


def get_average_window() -> int:
    """Number of most recent completed durations feeding the average."""
    return int(os.environ.get("SOP_ENGINE_AVERAGE_WINDOW", "10"))


def get_rate_window() -> int:
    """Number of most recent terminal occurrences feeding the completion rate."""
    return int(os.environ.get("SOP_ENGINE_RATE_WINDOW", "30"))


def get_rate_days() -> int:
    return int(os.environ.get("SOP_ENGINE_RATE_DAYS", "90"))
