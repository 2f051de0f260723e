import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from .config import settings


SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT,
        full_name TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS fields (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        boundary TEXT NOT NULL,
        area_hectares REAL,
        alert_threshold REAL NOT NULL DEFAULT 0.3
            CHECK (alert_threshold >= 0 AND alert_threshold <= 1),
        alerts_enabled INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_fields_user_id ON fields(user_id)',
    '''
    CREATE TABLE IF NOT EXISTS polygon_syncs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        field_id TEXT NOT NULL UNIQUE REFERENCES fields(id) ON DELETE CASCADE,
        provider_polygon_id TEXT,
        sync_status TEXT NOT NULL CHECK (sync_status IN ('pending', 'synced', 'error')),
        error_message TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        next_retry_at TIMESTAMP,
        last_synced_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        CHECK ((sync_status = 'synced') = (provider_polygon_id IS NOT NULL))
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS observations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        field_id TEXT NOT NULL REFERENCES fields(id) ON DELETE CASCADE,
        observation_date DATE NOT NULL,
        mean_index REAL NOT NULL,
        min_index REAL,
        max_index REAL,
        cloud_coverage REAL NOT NULL DEFAULT 0,
        data_coverage REAL,
        source TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        UNIQUE(field_id, observation_date, source)
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_observations_field_date ON observations(field_id, observation_date)',
    '''
    CREATE TABLE IF NOT EXISTS notifications (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        field_id TEXT REFERENCES fields(id) ON DELETE SET NULL,
        type TEXT NOT NULL,
        severity TEXT,
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        data TEXT NOT NULL DEFAULT '{}',
        episode_start DATE,
        created_at TIMESTAMP NOT NULL,
        read_at TIMESTAMP,
        dismissed_at TIMESTAMP,
        UNIQUE(field_id, episode_start)
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_notifications_user_created ON notifications(user_id, created_at DESC)',
    '''
    CREATE TABLE IF NOT EXISTS push_subscriptions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        endpoint TEXT NOT NULL UNIQUE,
        p256dh TEXT NOT NULL,
        auth TEXT NOT NULL,
        user_agent TEXT,
        created_at TIMESTAMP NOT NULL,
        last_used_at TIMESTAMP
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_push_subscriptions_user_id ON push_subscriptions(user_id)',
    '''
    CREATE TABLE IF NOT EXISTS notification_preferences (
        user_id TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
        push_enabled INTEGER NOT NULL DEFAULT 1,
        email_enabled INTEGER NOT NULL DEFAULT 1,
        quiet_hours_enabled INTEGER NOT NULL DEFAULT 0,
        quiet_hours_start TEXT NOT NULL DEFAULT '22:00',
        quiet_hours_end TEXT NOT NULL DEFAULT '07:00',
        updated_at TIMESTAMP NOT NULL
    )
    ''',
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Database:
    def __init__(self, db_path: str = "fieldsync.db", timeout: float = 5.0):
        self.db_path = db_path
        # Bounded wait on SQLite's write lock so a busy database cannot hang a request
        self.timeout = timeout
        self.init_db()

    def init_db(self):
        """Initialize the database with required tables"""
        with self.connection() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    @contextmanager
    def connection(self):
        """Open a connection, commit on success, roll back on error, always close"""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


_database: Optional[Database] = None


def get_database() -> Database:
    """Process-wide database handle, created on first use"""
    global _database
    if _database is None:
        _database = Database(settings.database_path)
    return _database
