import sqlite3
from pathlib import Path

from .settings import settings


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS quota_usage (
    quota_date TEXT PRIMARY KEY,
    units_used INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS channels (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    handle TEXT,
    external_id TEXT,
    platform TEXT,
    is_live INTEGER NOT NULL DEFAULT 0,
    current_stream_id TEXT,
    last_checked_at TEXT,
    last_live_at TEXT,
    active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS trades (
    id TEXT PRIMARY KEY,
    stream_id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    direction TEXT NOT NULL,
    entry_time TEXT NOT NULL,
    entry_price REAL,
    exit_time TEXT,
    exit_price REAL,
    size REAL,
    pnl REAL,
    result TEXT NOT NULL,
    trade_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_trades_channel ON trades(channel_id, entry_time);

CREATE TABLE IF NOT EXISTS bot_policies (
    bot_id TEXT PRIMARY KEY,
    policy_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS executions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bot_id TEXT NOT NULL,
    trade_id TEXT NOT NULL,
    trader_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    status TEXT NOT NULL,
    action TEXT,
    quantity INTEGER,
    order_id INTEGER,
    result_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS system_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    message TEXT NOT NULL,
    metadata_json TEXT,
    created_at TEXT NOT NULL
);
"""



def get_connection(db_path: Path | None = None) -> sqlite3.Connection:
    db_path = Path(db_path or settings.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn



def initialize_database(db_path: Path | None = None) -> None:
    with get_connection(db_path) as conn:
        conn.executescript(SCHEMA_SQL)
        _ensure_column(conn, "executions", "error", "TEXT")
        conn.commit()


def _ensure_column(conn: sqlite3.Connection, table_name: str, column_name: str, column_type: str) -> None:
    info = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    existing = {row[1] for row in info}
    if column_name in existing:
        return
    conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type}")
