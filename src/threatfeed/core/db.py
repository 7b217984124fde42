# Core Module - SQLite Connection Helper
#
# Every on-disk store opens its connection through here so the pragma
# set stays the same across the feed.

import sqlite3
from pathlib import Path
from typing import Union

MEMORY_PATH = ":memory:"

DEFAULT_BUSY_TIMEOUT_MS = 5000


def is_memory(db_path: Union[str, Path]) -> bool:
    """True for the in-memory sentinel and ``file::memory:`` URIs."""
    text = str(db_path)
    return text == MEMORY_PATH or text.startswith("file::memory:")


def connect(
    db_path: Union[str, Path],
    *,
    row_factory: bool = False,
    check_same_thread: bool = True,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
) -> sqlite3.Connection:
    """Open ``db_path`` with the feed's pragmas applied.

    File databases get their parent directory created and run in WAL
    mode so readers don't block the ingestion writer.  In-memory
    databases skip both.
    """
    memory = is_memory(db_path)
    if not memory:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(
        str(db_path),
        check_same_thread=check_same_thread,
        uri=str(db_path).startswith("file:"),
    )
    if not memory:
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    conn.execute("PRAGMA foreign_keys=ON")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn
