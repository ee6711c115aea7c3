from __future__ import annotations

import sqlite3


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.isolation_level = None
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_entity_schema(conn: sqlite3.Connection) -> None:
    # uint256 amounts are stored as base-10 TEXT to keep full precision.
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS system_state (
            id TEXT PRIMARY KEY,
            total_supply TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS swaps (
            id TEXT PRIMARY KEY,
            user TEXT NOT NULL,
            stable TEXT NOT NULL,
            amount_in TEXT NOT NULL,
            amount_out TEXT NOT NULL,
            fee_amount TEXT NOT NULL,
            timestamp INTEGER NOT NULL,
            block_number INTEGER NOT NULL,
            log_index INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS psm_routes (
            id TEXT PRIMARY KEY,
            max_depth TEXT NOT NULL,
            spread_bps INTEGER NOT NULL,
            buffer TEXT,
            decimals INTEGER,
            halted INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS allocators (
            id TEXT PRIMARY KEY,
            ceiling TEXT NOT NULL,
            daily_cap TEXT NOT NULL,
            debt TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS allocator_actions (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            allocator TEXT NOT NULL,
            counterparty TEXT NOT NULL,
            amount TEXT NOT NULL,
            timestamp INTEGER NOT NULL,
            block_number INTEGER NOT NULL,
            log_index INTEGER NOT NULL,
            applied INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_allocator_actions_allocator "
        "ON allocator_actions(allocator)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            s0xusd_balance TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS savings_actions (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            user TEXT NOT NULL,
            owner TEXT NOT NULL,
            assets TEXT NOT NULL,
            shares TEXT NOT NULL,
            timestamp INTEGER NOT NULL,
            block_number INTEGER NOT NULL,
            log_index INTEGER NOT NULL,
            applied INTEGER NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_savings_actions_user ON savings_actions(user)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS supply_changes (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            account TEXT NOT NULL,
            value TEXT NOT NULL,
            timestamp INTEGER NOT NULL,
            block_number INTEGER NOT NULL,
            log_index INTEGER NOT NULL,
            applied INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS params (
            id TEXT PRIMARY KEY,
            kind TEXT NOT NULL,
            value TEXT NOT NULL,
            updated_at INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS param_updates (
            id TEXT PRIMARY KEY,
            key TEXT NOT NULL,
            kind TEXT NOT NULL,
            value TEXT NOT NULL,
            timestamp INTEGER NOT NULL
        )
        """
    )


def ensure_projector_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS processed_events (
            event_key TEXT PRIMARY KEY,
            stream_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            block_number INTEGER NOT NULL,
            log_index INTEGER NOT NULL,
            transaction_hash TEXT NOT NULL,
            applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS stream_cursors (
            stream_id TEXT PRIMARY KEY,
            block_number INTEGER NOT NULL,
            log_index INTEGER NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS integrity_issues (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            code TEXT NOT NULL,
            severity TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_key TEXT NOT NULL,
            event_key TEXT NOT NULL,
            details_json TEXT NOT NULL,
            recorded_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_integrity_issues_code ON integrity_issues(code)"
    )


def ensure_min_schema(conn: sqlite3.Connection) -> None:
    ensure_entity_schema(conn)
    ensure_projector_schema(conn)
