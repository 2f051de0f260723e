"""
Typed repositories, one per entity.

Each repository opens its own short-lived connection through Database.connection()
and returns pydantic models, never raw rows.
"""

import json
import sqlite3
import uuid
from datetime import date, datetime
from typing import Iterable, List, Optional, Tuple

from .database import Database, utcnow
from .models import (
    Field,
    FieldCreate,
    FieldUpdate,
    Notification,
    NotificationPreferences,
    Observation,
    PolygonSync,
    PreferencesUpdate,
    PushSubscription,
    PushSubscriptionCreate,
    SyncStatus,
    User,
)

_UNSET = object()


def _iso(value) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def _is_unique_violation(error: sqlite3.IntegrityError) -> bool:
    return "UNIQUE constraint failed" in str(error)


class UserRepository:
    def __init__(self, database: Database):
        self.database = database

    def get(self, user_id: str) -> Optional[User]:
        with self.database.connection() as conn:
            row = conn.execute('SELECT * FROM users WHERE id = ?', (user_id,)).fetchone()
        return User(**dict(row)) if row else None

    def save(self, user: User) -> User:
        """Insert or refresh the contact card"""
        with self.database.connection() as conn:
            conn.execute('''
                INSERT INTO users (id, email, full_name) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET email = excluded.email, full_name = excluded.full_name
            ''', (user.id, user.email, user.full_name))
        return user


class FieldRepository:
    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    def _to_model(row: sqlite3.Row) -> Field:
        data = dict(row)
        data["boundary"] = json.loads(data["boundary"])
        data["alerts_enabled"] = bool(data["alerts_enabled"])
        return Field(**data)

    def create(self, user_id: str, payload: FieldCreate) -> Field:
        field_id = str(uuid.uuid4())
        now = utcnow().isoformat()
        with self.database.connection() as conn:
            conn.execute('''
                INSERT INTO fields
                (id, user_id, name, boundary, area_hectares, alert_threshold, alerts_enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                field_id,
                user_id,
                payload.name,
                json.dumps(payload.boundary.model_dump()),
                payload.area_hectares,
                payload.alert_threshold,
                1 if payload.alerts_enabled else 0,
                now,
                now,
            ))
        return self.get(field_id)

    def get(self, field_id: str, user_id: Optional[str] = None) -> Optional[Field]:
        """Fetch a field; when user_id is given, a field owned by someone else reads as missing"""
        query = 'SELECT * FROM fields WHERE id = ?'
        params: Tuple = (field_id,)
        if user_id is not None:
            query += ' AND user_id = ?'
            params = (field_id, user_id)
        with self.database.connection() as conn:
            row = conn.execute(query, params).fetchone()
        return self._to_model(row) if row else None

    def list_for_user(self, user_id: str) -> List[Field]:
        with self.database.connection() as conn:
            rows = conn.execute(
                'SELECT * FROM fields WHERE user_id = ? ORDER BY created_at DESC', (user_id,)
            ).fetchall()
        return [self._to_model(row) for row in rows]

    def list_all(self) -> List[Field]:
        with self.database.connection() as conn:
            rows = conn.execute('SELECT * FROM fields ORDER BY created_at').fetchall()
        return [self._to_model(row) for row in rows]

    def update(self, field_id: str, user_id: str, payload: FieldUpdate) -> Optional[Field]:
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        if changes:
            if "alerts_enabled" in changes:
                changes["alerts_enabled"] = 1 if changes["alerts_enabled"] else 0
            assignments = ", ".join(f"{column} = ?" for column in changes)
            with self.database.connection() as conn:
                conn.execute(
                    f'UPDATE fields SET {assignments}, updated_at = ? WHERE id = ? AND user_id = ?',
                    (*changes.values(), utcnow().isoformat(), field_id, user_id),
                )
        return self.get(field_id, user_id)

    def delete(self, field_id: str, user_id: str) -> bool:
        with self.database.connection() as conn:
            cursor = conn.execute('DELETE FROM fields WHERE id = ? AND user_id = ?', (field_id, user_id))
        return cursor.rowcount > 0


class PolygonSyncRepository:
    """
    Persistence for the sync state machine.

    Every status write is conditional on the status the caller observed, so the
    row itself is the compare-and-set register; no external lock is involved.
    """

    def __init__(self, database: Database):
        self.database = database

    def get(self, field_id: str) -> Optional[PolygonSync]:
        with self.database.connection() as conn:
            row = conn.execute('SELECT * FROM polygon_syncs WHERE field_id = ?', (field_id,)).fetchone()
        return PolygonSync(**dict(row)) if row else None

    def create_pending(self, field_id: str) -> bool:
        """Claim an unsynced field. False when another writer created the row first."""
        now = utcnow().isoformat()
        try:
            with self.database.connection() as conn:
                conn.execute('''
                    INSERT INTO polygon_syncs (field_id, sync_status, attempts, created_at, updated_at)
                    VALUES (?, ?, 0, ?, ?)
                ''', (field_id, SyncStatus.PENDING.value, now, now))
        except sqlite3.IntegrityError as e:
            if _is_unique_violation(e):
                return False
            raise
        return True

    def compare_and_set(
        self,
        field_id: str,
        expected: SyncStatus,
        new: SyncStatus,
        *,
        provider_polygon_id=_UNSET,
        error_message=_UNSET,
        attempts=_UNSET,
        next_retry_at=_UNSET,
        last_synced_at=_UNSET,
    ) -> bool:
        """Move expected -> new atomically; False if the row was not in `expected`"""
        columns = {"sync_status": new.value, "updated_at": utcnow().isoformat()}
        for column, value in (
            ("provider_polygon_id", provider_polygon_id),
            ("error_message", error_message),
            ("attempts", attempts),
            ("next_retry_at", next_retry_at),
            ("last_synced_at", last_synced_at),
        ):
            if value is not _UNSET:
                columns[column] = _iso(value) if isinstance(value, datetime) else value

        assignments = ", ".join(f"{column} = ?" for column in columns)
        with self.database.connection() as conn:
            cursor = conn.execute(
                f'UPDATE polygon_syncs SET {assignments} WHERE field_id = ? AND sync_status = ?',
                (*columns.values(), field_id, expected.value),
            )
        return cursor.rowcount == 1

    def delete(self, field_id: str) -> bool:
        with self.database.connection() as conn:
            cursor = conn.execute('DELETE FROM polygon_syncs WHERE field_id = ?', (field_id,))
        return cursor.rowcount > 0


class ObservationRepository:
    def __init__(self, database: Database):
        self.database = database

    def upsert_many(self, observations: Iterable[Observation]) -> int:
        """
        Append readings keyed by (field, date, source).

        A reading that already exists is left untouched, so re-ingesting the
        same provider response is a no-op. Returns the number of new rows.
        """
        now = utcnow().isoformat()
        inserted = 0
        with self.database.connection() as conn:
            for obs in observations:
                cursor = conn.execute('''
                    INSERT OR IGNORE INTO observations
                    (field_id, observation_date, mean_index, min_index, max_index,
                     cloud_coverage, data_coverage, source, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    obs.field_id,
                    obs.observation_date.isoformat(),
                    obs.mean_index,
                    obs.min_index,
                    obs.max_index,
                    obs.cloud_coverage,
                    obs.data_coverage,
                    obs.source,
                    now,
                ))
                inserted += cursor.rowcount
        return inserted

    def list_for_field(
        self,
        field_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        descending: bool = False,
    ) -> List[Observation]:
        query = 'SELECT * FROM observations WHERE field_id = ?'
        params: list = [field_id]
        if start is not None:
            query += ' AND observation_date >= ?'
            params.append(start.isoformat())
        if end is not None:
            query += ' AND observation_date <= ?'
            params.append(end.isoformat())
        order = 'DESC' if descending else 'ASC'
        query += f' ORDER BY observation_date {order}, source {order}'

        with self.database.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Observation(**{k: row[k] for k in row.keys() if k not in ("id", "created_at")}) for row in rows]


class NotificationRepository:
    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    def _to_model(row: sqlite3.Row) -> Notification:
        data = dict(row)
        data["data"] = json.loads(data.get("data") or "{}")
        return Notification(**data)

    def create(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        field_id: Optional[str] = None,
        severity: Optional[str] = None,
        data: Optional[dict] = None,
        episode_start: Optional[date] = None,
    ) -> Optional[Notification]:
        """
        Insert a notification row.

        Returns None when an alert for the same (field, episode_start) already
        exists: the unique constraint decides races between concurrent evaluations.
        """
        notification_id = str(uuid.uuid4())
        try:
            with self.database.connection() as conn:
                conn.execute('''
                    INSERT INTO notifications
                    (id, user_id, field_id, type, severity, title, message, data, episode_start, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    notification_id,
                    user_id,
                    field_id,
                    type,
                    severity,
                    title,
                    message,
                    json.dumps(data or {}),
                    _iso(episode_start),
                    utcnow().isoformat(),
                ))
        except sqlite3.IntegrityError as e:
            if _is_unique_violation(e):
                return None
            raise
        return self.get(notification_id)

    def get(self, notification_id: str) -> Optional[Notification]:
        with self.database.connection() as conn:
            row = conn.execute('''
                SELECT n.*, f.name AS field_name FROM notifications n
                LEFT JOIN fields f ON f.id = n.field_id
                WHERE n.id = ?
            ''', (notification_id,)).fetchone()
        return self._to_model(row) if row else None

    def list_for_user(
        self, user_id: str, unread_only: bool = False, limit: int = 20, offset: int = 0
    ) -> Tuple[List[Notification], int]:
        """Newest first; dismissed rows are never returned"""
        where = 'n.user_id = ? AND n.dismissed_at IS NULL'
        if unread_only:
            where += ' AND n.read_at IS NULL'

        with self.database.connection() as conn:
            total = conn.execute(f'SELECT COUNT(*) FROM notifications n WHERE {where}', (user_id,)).fetchone()[0]
            rows = conn.execute(f'''
                SELECT n.*, f.name AS field_name FROM notifications n
                LEFT JOIN fields f ON f.id = n.field_id
                WHERE {where}
                ORDER BY n.created_at DESC, n.rowid DESC
                LIMIT ? OFFSET ?
            ''', (user_id, limit, offset)).fetchall()
        return [self._to_model(row) for row in rows], total

    def unread_count(self, user_id: str) -> int:
        with self.database.connection() as conn:
            return conn.execute('''
                SELECT COUNT(*) FROM notifications
                WHERE user_id = ? AND read_at IS NULL AND dismissed_at IS NULL
            ''', (user_id,)).fetchone()[0]

    def _stamp(self, column: str, user_id: str, ids: Optional[List[str]]) -> int:
        # Only null timestamps are written, which keeps read_at/dismissed_at monotonic
        query = f'UPDATE notifications SET {column} = ? WHERE user_id = ? AND {column} IS NULL'
        params: list = [utcnow().isoformat(), user_id]
        if ids is not None:
            if not ids:
                return 0
            query += f' AND id IN ({", ".join("?" for _ in ids)})'
            params.extend(ids)
        with self.database.connection() as conn:
            cursor = conn.execute(query, params)
        return cursor.rowcount

    def mark_read(self, user_id: str, ids: Optional[List[str]] = None) -> int:
        """Mark the given ids (or everything when ids is None) as read"""
        return self._stamp("read_at", user_id, ids)

    def dismiss(self, user_id: str, ids: Optional[List[str]] = None) -> int:
        """Dismiss the given ids (or everything when ids is None)"""
        return self._stamp("dismissed_at", user_id, ids)


class PushSubscriptionRepository:
    def __init__(self, database: Database):
        self.database = database

    def save(self, user_id: str, payload: PushSubscriptionCreate) -> PushSubscription:
        """Register an endpoint; re-subscribing the same endpoint refreshes its keys and owner"""
        with self.database.connection() as conn:
            conn.execute('''
                INSERT INTO push_subscriptions (id, user_id, endpoint, p256dh, auth, user_agent, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(endpoint) DO UPDATE SET
                    user_id = excluded.user_id,
                    p256dh = excluded.p256dh,
                    auth = excluded.auth,
                    user_agent = excluded.user_agent
            ''', (
                str(uuid.uuid4()),
                user_id,
                payload.endpoint,
                payload.keys.p256dh,
                payload.keys.auth,
                payload.user_agent,
                utcnow().isoformat(),
            ))
            row = conn.execute(
                'SELECT * FROM push_subscriptions WHERE endpoint = ?', (payload.endpoint,)
            ).fetchone()
        return PushSubscription(**dict(row))

    def list_for_user(self, user_id: str) -> List[PushSubscription]:
        with self.database.connection() as conn:
            rows = conn.execute(
                'SELECT * FROM push_subscriptions WHERE user_id = ? ORDER BY created_at', (user_id,)
            ).fetchall()
        return [PushSubscription(**dict(row)) for row in rows]

    def delete(self, subscription_id: str) -> bool:
        with self.database.connection() as conn:
            cursor = conn.execute('DELETE FROM push_subscriptions WHERE id = ?', (subscription_id,))
        return cursor.rowcount > 0

    def delete_by_endpoint(self, user_id: str, endpoint: str) -> bool:
        with self.database.connection() as conn:
            cursor = conn.execute(
                'DELETE FROM push_subscriptions WHERE user_id = ? AND endpoint = ?', (user_id, endpoint)
            )
        return cursor.rowcount > 0

    def touch(self, subscription_id: str):
        with self.database.connection() as conn:
            conn.execute(
                'UPDATE push_subscriptions SET last_used_at = ? WHERE id = ?',
                (utcnow().isoformat(), subscription_id),
            )


class PreferencesRepository:
    def __init__(self, database: Database):
        self.database = database

    def get(self, user_id: str) -> NotificationPreferences:
        """Stored preferences, or the defaults (everything on) when the user never saved any"""
        with self.database.connection() as conn:
            row = conn.execute(
                'SELECT * FROM notification_preferences WHERE user_id = ?', (user_id,)
            ).fetchone()
        if not row:
            return NotificationPreferences(user_id=user_id)
        data = dict(row)
        data.pop("updated_at", None)
        for flag in ("push_enabled", "email_enabled", "quiet_hours_enabled"):
            data[flag] = bool(data[flag])
        return NotificationPreferences(**data)

    def update(self, user_id: str, payload: PreferencesUpdate) -> NotificationPreferences:
        merged = self.get(user_id).model_copy(update=payload.model_dump(exclude_unset=True, exclude_none=True))
        with self.database.connection() as conn:
            conn.execute('''
                INSERT OR REPLACE INTO notification_preferences
                (user_id, push_enabled, email_enabled, quiet_hours_enabled,
                 quiet_hours_start, quiet_hours_end, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', (
                user_id,
                1 if merged.push_enabled else 0,
                1 if merged.email_enabled else 0,
                1 if merged.quiet_hours_enabled else 0,
                merged.quiet_hours_start.strftime("%H:%M"),
                merged.quiet_hours_end.strftime("%H:%M"),
                utcnow().isoformat(),
            ))
        return merged
