"""SQLite database for storing connections, settings and the query log."""

import os
import sqlite3
from pathlib import Path

DB_PATH_ENV = "TERMBENCH_DB"


def default_db_path():
    env_path = os.environ.get(DB_PATH_ENV)
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".termbench" / "termbench.db"


class Database:
    def __init__(self, db_path=None):
        if db_path is None:
            db_path = default_db_path()
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self):
        return sqlite3.connect(self.db_path)

    def _init_db(self):
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS connections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    db_type TEXT NOT NULL DEFAULT 'sqlite',
                    host TEXT,
                    port INTEGER,
                    database TEXT,
                    user TEXT,
                    password TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS identity_overrides (
                    table_name TEXT PRIMARY KEY,
                    columns TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS query_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    connection_name TEXT,
                    sql TEXT NOT NULL,
                    duration REAL,
                    row_count INTEGER,
                    status TEXT NOT NULL,
                    error_message TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.commit()

    # Connection methods
    def get_connections(self):
        with self._get_conn() as conn:
            conn.row_factory = sqlite3.Row
            cursor = conn.execute(
                "SELECT id, name, db_type, host, port, database, user FROM connections ORDER BY name"
            )
            return [dict(row) for row in cursor.fetchall()]

    def get_connection(self, name):
        with self._get_conn() as conn:
            conn.row_factory = sqlite3.Row
            cursor = conn.execute(
                "SELECT id, name, db_type, host, port, database, user, password FROM connections WHERE name = ?",
                (name,)
            )
            row = cursor.fetchone()
            return dict(row) if row else None

    def save_connection(self, name, db_type, host, port, database, user, password, conn_id=None):
        with self._get_conn() as conn:
            if conn_id:
                # Update existing connection
                conn.execute(
                    """UPDATE connections SET name = ?, db_type = ?, host = ?, port = ?,
                       database = ?, user = ?, password = ? WHERE id = ?""",
                    (name, db_type, host, port, database, user, password, conn_id)
                )
            else:
                # Insert new connection
                conn.execute(
                    """INSERT INTO connections (name, db_type, host, port, database, user, password)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (name, db_type, host, port, database, user, password)
                )
            conn.commit()

    def delete_connection(self, conn_id):
        with self._get_conn() as conn:
            conn.execute("DELETE FROM connections WHERE id = ?", (conn_id,))
            conn.commit()

    # Settings methods
    def get_setting(self, key, default=None):
        with self._get_conn() as conn:
            cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
            row = cursor.fetchone()
            return row[0] if row else default

    def set_setting(self, key, value):
        with self._get_conn() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                (key, None if value is None else str(value))
            )
            conn.commit()

    # Identity override methods
    def get_identity_overrides(self):
        """Return {table_name: [column, ...]} for every configured override."""
        with self._get_conn() as conn:
            cursor = conn.execute("SELECT table_name, columns FROM identity_overrides")
            return {
                table: [c.strip() for c in columns.split(",") if c.strip()]
                for table, columns in cursor.fetchall()
            }

    def set_identity_override(self, table_name, columns):
        with self._get_conn() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO identity_overrides (table_name, columns) VALUES (?, ?)",
                (table_name, ",".join(columns))
            )
            conn.commit()

    def delete_identity_override(self, table_name):
        with self._get_conn() as conn:
            conn.execute("DELETE FROM identity_overrides WHERE table_name = ?", (table_name,))
            conn.commit()

    # Query log methods
    def log_query(self, connection_name, sql, duration=None, row_count=None,
                  status="success", error_message=None):
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO query_log (connection_name, sql, duration, row_count, status, error_message)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (connection_name, sql, duration, row_count, status, error_message)
            )
            conn.commit()

    def get_query_log(self, connection_name=None, limit=500):
        with self._get_conn() as conn:
            conn.row_factory = sqlite3.Row
            if connection_name:
                cursor = conn.execute(
                    """SELECT connection_name, sql, duration, row_count, status, error_message, created_at
                       FROM query_log WHERE connection_name = ? ORDER BY id DESC LIMIT ?""",
                    (connection_name, limit)
                )
            else:
                cursor = conn.execute(
                    """SELECT connection_name, sql, duration, row_count, status, error_message, created_at
                       FROM query_log ORDER BY id DESC LIMIT ?""",
                    (limit,)
                )
            return [dict(row) for row in cursor.fetchall()]

    def clear_query_log(self, connection_name=None):
        with self._get_conn() as conn:
            if connection_name:
                conn.execute("DELETE FROM query_log WHERE connection_name = ?", (connection_name,))
            else:
                conn.execute("DELETE FROM query_log")
            conn.commit()
