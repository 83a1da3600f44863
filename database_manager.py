import sqlite3
import secrets
import string
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

KEY_ALPHABET = string.ascii_uppercase + string.digits
KEY_LENGTH = 8
FREE_TRIAL_COOLDOWN = timedelta(days=14)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    """ISO-8601 UTC text, sortable lexically"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def from_timestamp(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


class DatabaseManager:
    """Persistent ownership ledger, deploy keys and free-trial cooldowns"""

    def __init__(self, db_path: str = "deploy_bot.db", busy_timeout: float = 10.0,
                 free_trial_cooldown: timedelta = FREE_TRIAL_COOLDOWN):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self.free_trial_cooldown = free_trial_cooldown
        self.init_database()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def init_database(self):
        """Initialize the database with required tables"""
        with self.connect() as conn:
            cursor = conn.cursor()

            # Ownership ledger
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS user_deployments (
                    user_id INTEGER NOT NULL,
                    app_name TEXT NOT NULL,
                    session_id TEXT,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, app_name)
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_user_deployments_app
                ON user_deployments (app_name, created_at)
            """)

            # Single-use deploy keys
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS deploy_keys (
                    key TEXT PRIMARY KEY,
                    uses_left INTEGER NOT NULL CHECK (uses_left >= 0),
                    created_by INTEGER,
                    created_at TEXT NOT NULL
                )
            """)

            # Free trial cooldowns
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS free_trial_cooldowns (
                    user_id INTEGER PRIMARY KEY,
                    last_deploy_at TEXT NOT NULL
                )
            """)

            # Apps running on a free trial, torn down when the trial ends
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS free_trial_apps (
                    app_name TEXT PRIMARY KEY,
                    user_id INTEGER NOT NULL,
                    started_at TEXT NOT NULL
                )
            """)

            conn.commit()
        conn.close()

    # Ownership

    def upsert_ownership(self, user_id: int, app_name: str, session_id: str):
        """Create or update an ownership record, refreshing created_at"""
        conn = self.connect()
        try:
            with conn:
                conn.execute("""
                    INSERT INTO user_deployments (user_id, app_name, session_id, created_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT (user_id, app_name)
                    DO UPDATE SET session_id = excluded.session_id, created_at = excluded.created_at
                """, (user_id, app_name, session_id, to_timestamp(utcnow())))
        finally:
            conn.close()

    def list_apps(self, user_id: int) -> List[str]:
        """App names owned by a user, oldest first"""
        conn = self.connect()
        try:
            cursor = conn.execute("""
                SELECT app_name FROM user_deployments
                WHERE user_id = ?
                ORDER BY created_at ASC
            """, (user_id,))
            return [row["app_name"] for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_ownership(self, user_id: int, app_name: str) -> Optional[Dict]:
        conn = self.connect()
        try:
            cursor = conn.execute("""
                SELECT * FROM user_deployments WHERE user_id = ? AND app_name = ?
            """, (user_id, app_name))
            row = cursor.fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def find_owner(self, app_name: str) -> Optional[Dict]:
        """Most recently created owner of an app, or None"""
        conn = self.connect()
        try:
            cursor = conn.execute("""
                SELECT * FROM user_deployments
                WHERE app_name = ?
                ORDER BY created_at DESC
                LIMIT 1
            """, (app_name,))
            row = cursor.fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def remove_ownership(self, user_id: int, app_name: str) -> bool:
        conn = self.connect()
        try:
            with conn:
                cursor = conn.execute("""
                    DELETE FROM user_deployments WHERE user_id = ? AND app_name = ?
                """, (user_id, app_name))
            return cursor.rowcount > 0
        finally:
            conn.close()

    def remove_app(self, app_name: str) -> int:
        """Drop every ownership row for an app name"""
        conn = self.connect()
        try:
            with conn:
                cursor = conn.execute("DELETE FROM user_deployments WHERE app_name = ?", (app_name,))
                conn.execute("DELETE FROM free_trial_apps WHERE app_name = ?", (app_name,))
            return cursor.rowcount
        finally:
            conn.close()

    def list_all(self) -> List[Dict]:
        conn = self.connect()
        try:
            cursor = conn.execute("""
                SELECT * FROM user_deployments ORDER BY created_at ASC
            """)
            return [dict(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def transfer_ownership(self, app_name: str, new_user_id: int) -> Optional[int]:
        """
        Reassign an app to another user.

        Not atomic: the old rows are deleted, then the new row is inserted
        in a separate statement. A crash between the two leaves the app
        unowned; re-running the same admin command repairs it.
        Returns the previous owner's id, if any.
        """
        previous = self.find_owner(app_name)
        self.remove_app(app_name)
        session_id = previous["session_id"] if previous else None
        self.upsert_ownership(new_user_id, app_name, session_id)
        return previous["user_id"] if previous else None

    def resolve_duplicate_owners(self) -> int:
        """Keep only the most recently created owner per app name"""
        conn = self.connect()
        try:
            with conn:
                cursor = conn.execute("""
                    DELETE FROM user_deployments
                    WHERE EXISTS (
                        SELECT 1 FROM user_deployments AS newer
                        WHERE newer.app_name = user_deployments.app_name
                        AND (newer.created_at > user_deployments.created_at
                             OR (newer.created_at = user_deployments.created_at
                                 AND newer.user_id > user_deployments.user_id))
                    )
                """)
            removed = cursor.rowcount
            if removed:
                logger.info(f"Removed {removed} stale duplicate ownership rows")
            return removed
        finally:
            conn.close()

    # Deploy keys

    def create_deploy_key(self, uses: int, created_by: int) -> str:
        if uses < 1:
            raise ValueError("A deploy key needs at least one use")
        conn = self.connect()
        try:
            while True:
                key = ''.join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_LENGTH))
                try:
                    with conn:
                        conn.execute("""
                            INSERT INTO deploy_keys (key, uses_left, created_by, created_at)
                            VALUES (?, ?, ?, ?)
                        """, (key, uses, created_by, to_timestamp(utcnow())))
                    return key
                except sqlite3.IntegrityError:
                    continue
        finally:
            conn.close()

    def add_deploy_key(self, key: str, uses: int, created_by: int) -> bool:
        """Insert a key with a known value; False if it already exists"""
        conn = self.connect()
        try:
            with conn:
                conn.execute("""
                    INSERT INTO deploy_keys (key, uses_left, created_by, created_at)
                    VALUES (?, ?, ?, ?)
                """, (key.upper(), uses, created_by, to_timestamp(utcnow())))
            return True
        except sqlite3.IntegrityError:
            return False
        finally:
            conn.close()

    def redeem_deploy_key(self, key: str) -> Optional[int]:
        """
        Spend one use of a deploy key.

        Returns the uses left after redemption, or None when the key is
        unknown or exhausted. The decrement and the delete-at-zero run in
        one IMMEDIATE transaction, so two redemptions of the last use
        cannot both succeed.
        """
        key = key.strip().upper()
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute("""
                    UPDATE deploy_keys SET uses_left = uses_left - 1
                    WHERE key = ? AND uses_left > 0
                """, (key,))
                if cursor.rowcount == 0:
                    conn.execute("ROLLBACK")
                    return None
                remaining = conn.execute(
                    "SELECT uses_left FROM deploy_keys WHERE key = ?", (key,)
                ).fetchone()[0]
                if remaining <= 0:
                    conn.execute("DELETE FROM deploy_keys WHERE key = ?", (key,))
                conn.execute("COMMIT")
                return remaining
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def list_deploy_keys(self) -> List[Dict]:
        conn = self.connect()
        try:
            cursor = conn.execute("SELECT * FROM deploy_keys ORDER BY created_at DESC")
            return [dict(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    # Free trials

    def can_deploy_free_trial(self, user_id: int, now: Optional[datetime] = None) -> Tuple[bool, Optional[datetime]]:
        """(eligible, next eligible time when not eligible)"""
        now = now or utcnow()
        conn = self.connect()
        try:
            row = conn.execute(
                "SELECT last_deploy_at FROM free_trial_cooldowns WHERE user_id = ?", (user_id,)
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return True, None
        retry_at = from_timestamp(row["last_deploy_at"]) + self.free_trial_cooldown
        if now >= retry_at:
            return True, None
        return False, retry_at

    def record_free_trial(self, user_id: int, now: Optional[datetime] = None):
        now = now or utcnow()
        conn = self.connect()
        try:
            with conn:
                conn.execute("""
                    INSERT INTO free_trial_cooldowns (user_id, last_deploy_at) VALUES (?, ?)
                    ON CONFLICT (user_id) DO UPDATE SET last_deploy_at = excluded.last_deploy_at
                """, (user_id, to_timestamp(now)))
        finally:
            conn.close()

    def mark_free_trial_app(self, user_id: int, app_name: str, now: Optional[datetime] = None):
        now = now or utcnow()
        conn = self.connect()
        try:
            with conn:
                conn.execute("""
                    INSERT INTO free_trial_apps (app_name, user_id, started_at) VALUES (?, ?, ?)
                    ON CONFLICT (app_name) DO UPDATE SET user_id = excluded.user_id
                """, (app_name, user_id, to_timestamp(now)))
        finally:
            conn.close()

    def is_free_trial_app(self, app_name: str) -> bool:
        conn = self.connect()
        try:
            row = conn.execute(
                "SELECT 1 FROM free_trial_apps WHERE app_name = ?", (app_name,)
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def get_global_statistics(self) -> Dict:
        """Get global bot statistics"""
        conn = self.connect()
        try:
            cursor = conn.cursor()

            cursor.execute("SELECT COUNT(*) FROM user_deployments")
            total_apps = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(DISTINCT user_id) FROM user_deployments")
            total_owners = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*), COALESCE(SUM(uses_left), 0) FROM deploy_keys")
            key_count, key_uses = cursor.fetchone()

            cursor.execute("SELECT COUNT(*) FROM free_trial_cooldowns")
            trial_users = cursor.fetchone()[0]

            return {
                'total_apps': total_apps,
                'total_owners': total_owners,
                'deploy_keys': key_count,
                'deploy_key_uses_left': key_uses,
                'free_trial_users': trial_users
            }
        finally:
            conn.close()
