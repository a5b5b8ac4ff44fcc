"""
SQLite Database Module for AnimaGenius
Persistent storage with WAL mode for concurrent access

Tables:
- users / admin_users
- projects / ai_processing_jobs
- subscriptions / payments
- usage_analytics / notifications / admin_audit_logs
"""

import sqlite3
import json
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple
from contextlib import contextmanager
import threading
import logging

logger = logging.getLogger(__name__)

_PROJECT_DIR = Path(__file__).resolve().parent.parent
_DEFAULT_DB_PATH = _PROJECT_DIR / 'data' / 'animagenius.db'
DB_PATH = Path(os.getenv('DATABASE_PATH', str(_DEFAULT_DB_PATH)))

# Columns holding JSON documents, decoded on read
JSON_COLUMNS = {
    'usage_limits', 'current_usage', 'settings', 'extracted_content',
    'ai_blueprint', 'script', 'processing_logs', 'input', 'output', 'metadata',
}

# Thread-local storage for connections
_local = threading.local()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Timestamps are stored as ISO-8601 UTC strings with microseconds"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def new_id() -> str:
    return uuid.uuid4().hex


def configure_database(path) -> Path:
    """Point the module at a different database file (closes the current connection)"""
    global DB_PATH
    close_db_connection()
    DB_PATH = Path(path)
    logger.info(f"[DB] Path configured: {DB_PATH}")
    return DB_PATH


def close_db_connection():
    conn = getattr(_local, 'connection', None)
    if conn is not None:
        conn.close()
        _local.connection = None


def get_db_connection() -> sqlite3.Connection:
    """Get thread-local database connection with WAL mode for concurrency"""
    if getattr(_local, 'connection', None) is None:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        _local.connection = sqlite3.connect(
            str(DB_PATH),
            check_same_thread=False,
            timeout=30.0
        )
        _local.connection.row_factory = sqlite3.Row

        _local.connection.execute('PRAGMA journal_mode=WAL')
        _local.connection.execute('PRAGMA synchronous=NORMAL')
        _local.connection.execute('PRAGMA foreign_keys=ON')
        _local.connection.execute('PRAGMA busy_timeout=30000')

        logger.info(f"[DB] Connected to {DB_PATH} (WAL mode enabled)")
    return _local.connection


@contextmanager
def get_db():
    """Context manager for database operations"""
    conn = get_db_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def check_database_health() -> Dict[str, Any]:
    """Check database health and return status"""
    try:
        conn = get_db_connection()
        cursor = conn.cursor()
        cursor.execute("SELECT 1")

        cursor.execute("PRAGMA journal_mode")
        journal_mode = cursor.fetchone()[0]

        cursor.execute("PRAGMA page_count")
        page_count = cursor.fetchone()[0]
        cursor.execute("PRAGMA page_size")
        page_size = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM users")
        user_count = cursor.fetchone()[0]
        cursor.execute("SELECT COUNT(*) FROM projects")
        project_count = cursor.fetchone()[0]

        return {
            'healthy': True,
            'path': str(DB_PATH),
            'journal_mode': journal_mode,
            'size_mb': round((page_count * page_size) / (1024 * 1024), 2),
            'user_count': user_count,
            'project_count': project_count
        }
    except sqlite3.Error as e:
        logger.error(f"[DB] Health check failed: {e}")
        return {
            'healthy': False,
            'error': str(e),
            'path': str(DB_PATH)
        }


def init_database():
    """Initialize database tables"""
    with get_db() as conn:
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL,
                subscription_tier TEXT DEFAULT 'FREE',
                subscription_status TEXT DEFAULT 'inactive',
                usage_limits TEXT NOT NULL,
                current_usage TEXT NOT NULL,
                trial_ends_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                last_login_at TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS admin_users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                name TEXT,
                api_key TEXT UNIQUE,
                role TEXT DEFAULT 'admin',
                created_at TEXT NOT NULL,
                last_login_at TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT DEFAULT 'draft',
                settings TEXT,
                file_url TEXT,
                file_name TEXT,
                file_type TEXT,
                file_size INTEGER,
                extracted_content TEXT,
                ai_blueprint TEXT,
                script TEXT,
                video_url TEXT,
                thumbnail_url TEXT,
                duration INTEGER,
                processing_logs TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users(id)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS ai_processing_jobs (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                type TEXT NOT NULL,
                status TEXT DEFAULT 'pending',
                input TEXT,
                output TEXT,
                provider TEXT,
                error TEXT,
                created_at TEXT NOT NULL,
                completed_at TEXT,
                FOREIGN KEY (project_id) REFERENCES projects(id)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS subscriptions (
                id TEXT PRIMARY KEY,
                user_id TEXT,
                paypal_subscription_id TEXT UNIQUE NOT NULL,
                plan_id TEXT,
                paypal_plan_id TEXT,
                status TEXT NOT NULL,
                current_period_start TEXT,
                current_period_end TEXT,
                cancel_at_period_end INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS payments (
                id TEXT PRIMARY KEY,
                subscription_id TEXT,
                paypal_payment_id TEXT UNIQUE,
                amount REAL NOT NULL,
                currency TEXT,
                status TEXT NOT NULL,
                payment_date TEXT NOT NULL,
                metadata TEXT,
                created_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS usage_analytics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT,
                action TEXT NOT NULL,
                metadata TEXT,
                created_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                type TEXT DEFAULT 'info',
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                is_read INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users(id)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS admin_audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                admin_user_id TEXT NOT NULL,
                action TEXT NOT NULL,
                target_type TEXT,
                target_id TEXT,
                metadata TEXT,
                created_at TEXT NOT NULL
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_users_created ON users(created_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_projects_user ON projects(user_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_jobs_project ON ai_processing_jobs(project_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_subscriptions_user ON subscriptions(user_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_payments_date ON payments(payment_date)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_analytics_user ON usage_analytics(user_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id)')

        logger.info("Database initialized successfully")


# ==============================================================================
# ROW HELPERS
# ==============================================================================

def _encode(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    """Convert a row to a dict, decoding JSON columns"""
    if row is None:
        return None
    data = dict(row)
    for key in JSON_COLUMNS.intersection(data.keys()):
        raw = data[key]
        if isinstance(raw, str):
            try:
                data[key] = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"[DB] Undecodable JSON in column {key}")
    return data


# ==============================================================================
# USER OPERATIONS
# ==============================================================================

USER_UPDATABLE_COLUMNS = {
    'name', 'email', 'subscription_tier', 'subscription_status',
    'usage_limits', 'current_usage', 'trial_ends_at',
}


def create_user(name: str, email: str, password_hash: str, subscription_tier: str,
                usage_limits: Dict, current_usage: Dict,
                trial_ends_at: Optional[datetime] = None) -> Optional[Dict]:
    """Create a new user. Returns None if the email is already registered."""
    user_id = new_id()
    now = to_iso(utcnow())

    with get_db() as conn:
        cursor = conn.cursor()
        try:
            cursor.execute('''
                INSERT INTO users (id, name, email, password_hash, subscription_tier,
                                   usage_limits, current_usage, trial_ends_at,
                                   created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (user_id, name, email.lower(), password_hash, subscription_tier,
                  _encode(usage_limits), _encode(current_usage),
                  to_iso(trial_ends_at) if trial_ends_at else None, now, now))
        except sqlite3.IntegrityError:
            return None

    return get_user_by_id(user_id)


def get_user_by_id(user_id: str) -> Optional[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM users WHERE id = ?', (user_id,))
        return _row_to_dict(cursor.fetchone())


def get_user_by_email(email: str) -> Optional[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM users WHERE email = ?', (email.lower(),))
        return _row_to_dict(cursor.fetchone())


def update_user_last_login(user_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('UPDATE users SET last_login_at = ? WHERE id = ?',
                       (to_iso(utcnow()), user_id))
        return cursor.rowcount > 0


def update_user(user_id: str, updates: Dict[str, Any]) -> Optional[Dict]:
    """Apply column updates to a user. Unknown columns raise ValueError."""
    unknown = set(updates) - USER_UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Unsupported user fields: {', '.join(sorted(unknown))}")

    assignments = []
    params: List[Any] = []
    for column, value in updates.items():
        if column in JSON_COLUMNS:
            value = _encode(value)
        elif column == 'email' and value:
            value = value.lower()
        assignments.append(f"{column} = ?")
        params.append(value)
    assignments.append("updated_at = ?")
    params.append(to_iso(utcnow()))
    params.append(user_id)

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(f"UPDATE users SET {', '.join(assignments)} WHERE id = ?", params)
        if cursor.rowcount == 0:
            return None

    return get_user_by_id(user_id)


def increment_user_video_usage(user_id: str) -> Dict:
    """Bump current_usage.videos by one inside a single transaction"""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT current_usage FROM users WHERE id = ?', (user_id,))
        row = cursor.fetchone()
        usage = json.loads(row['current_usage']) if row and row['current_usage'] else {}
        usage['videos'] = usage.get('videos', 0) + 1
        cursor.execute('UPDATE users SET current_usage = ?, updated_at = ? WHERE id = ?',
                       (_encode(usage), to_iso(utcnow()), user_id))
        return usage


def count_users(created_from: Optional[datetime] = None,
                created_to: Optional[datetime] = None) -> int:
    clauses = []
    params: List[Any] = []
    if created_from is not None:
        clauses.append('created_at >= ?')
        params.append(to_iso(created_from))
    if created_to is not None:
        clauses.append('created_at <= ?')
        params.append(to_iso(created_to))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ''

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(f'SELECT COUNT(*) FROM users {where}', params)
        return cursor.fetchone()[0]


def list_users(page: int = 1, limit: int = 10, search: str = '') -> Tuple[List[Dict], int]:
    """Paginated user listing with case-insensitive name/email search"""
    where = ''
    params: List[Any] = []
    if search:
        where = 'WHERE LOWER(u.name) LIKE ? OR LOWER(u.email) LIKE ?'
        pattern = f"%{search.lower()}%"
        params = [pattern, pattern]

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(f'SELECT COUNT(*) FROM users u {where}', params)
        total = cursor.fetchone()[0]

        cursor.execute(f'''
            SELECT
                u.id, u.name, u.email, u.subscription_tier, u.subscription_status,
                u.created_at, u.last_login_at, u.current_usage, u.usage_limits,
                (SELECT COUNT(*) FROM projects p WHERE p.user_id = u.id) AS project_count
            FROM users u
            {where}
            ORDER BY u.created_at DESC
            LIMIT ? OFFSET ?
        ''', params + [limit, (page - 1) * limit])
        users = [_row_to_dict(row) for row in cursor.fetchall()]

    return users, total


# ==============================================================================
# ADMIN USER OPERATIONS
# ==============================================================================

def create_admin_user(email: str, name: str, api_key: str, role: str = 'admin') -> Optional[Dict]:
    admin_id = new_id()
    with get_db() as conn:
        cursor = conn.cursor()
        try:
            cursor.execute('''
                INSERT INTO admin_users (id, email, name, api_key, role, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (admin_id, email.lower(), name, api_key, role, to_iso(utcnow())))
        except sqlite3.IntegrityError:
            return None
    return get_admin_by_email(email)


def get_admin_by_api_key(api_key: str) -> Optional[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM admin_users WHERE api_key = ?', (api_key,))
        return _row_to_dict(cursor.fetchone())


def get_admin_by_email(email: str) -> Optional[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM admin_users WHERE email = ?', (email.lower(),))
        return _row_to_dict(cursor.fetchone())


def touch_admin_login(admin_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('UPDATE admin_users SET last_login_at = ? WHERE id = ?',
                       (to_iso(utcnow()), admin_id))
        return cursor.rowcount > 0


# ==============================================================================
# PROJECT OPERATIONS
# ==============================================================================

PROJECT_UPDATABLE_COLUMNS = {
    'title', 'description', 'status', 'settings', 'file_url', 'file_name',
    'file_type', 'file_size', 'extracted_content', 'ai_blueprint', 'script',
    'video_url', 'thumbnail_url', 'duration', 'processing_logs',
}


def create_project(user_id: str, title: str, description: Optional[str] = None,
                   settings: Optional[Dict] = None, status: str = 'draft') -> Dict:
    project_id = new_id()
    now = to_iso(utcnow())
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO projects (id, user_id, title, description, status, settings,
                                  created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (project_id, user_id, title, description, status, _encode(settings or {}),
              now, now))
    return get_project(project_id)


def get_project(project_id: str) -> Optional[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM projects WHERE id = ?', (project_id,))
        return _row_to_dict(cursor.fetchone())


def get_project_for_user(project_id: str, user_id: str) -> Optional[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM projects WHERE id = ? AND user_id = ?',
                       (project_id, user_id))
        return _row_to_dict(cursor.fetchone())


def list_projects_for_user(user_id: str) -> List[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT id, title, description, status, video_url, thumbnail_url,
                   duration, created_at
            FROM projects
            WHERE user_id = ?
            ORDER BY created_at DESC
        ''', (user_id,))
        return [_row_to_dict(row) for row in cursor.fetchall()]


def update_project(project_id: str, **fields) -> bool:
    unknown = set(fields) - PROJECT_UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Unsupported project fields: {', '.join(sorted(unknown))}")

    assignments = []
    params: List[Any] = []
    for column, value in fields.items():
        assignments.append(f"{column} = ?")
        params.append(_encode(value) if column in JSON_COLUMNS else value)
    assignments.append("updated_at = ?")
    params.append(to_iso(utcnow()))
    params.append(project_id)

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(f"UPDATE projects SET {', '.join(assignments)} WHERE id = ?", params)
        return cursor.rowcount > 0


def count_projects() -> int:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT COUNT(*) FROM projects')
        return cursor.fetchone()[0]


# ==============================================================================
# AI PROCESSING JOBS
# ==============================================================================

def create_ai_job(project_id: str, job_type: str, input_data: Dict,
                  provider: str, status: str = 'pending') -> Dict:
    job_id = new_id()
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO ai_processing_jobs (id, project_id, type, status, input, provider, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        ''', (job_id, project_id, job_type, status, _encode(input_data), provider,
              to_iso(utcnow())))
    return get_ai_job(job_id)


def get_ai_job(job_id: str) -> Optional[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM ai_processing_jobs WHERE id = ?', (job_id,))
        return _row_to_dict(cursor.fetchone())


def update_ai_job(job_id: str, status: str, output: Optional[Dict] = None,
                  error: Optional[str] = None) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        if status in ('completed', 'failed'):
            cursor.execute('''
                UPDATE ai_processing_jobs
                SET status = ?, output = ?, error = ?, completed_at = ?
                WHERE id = ?
            ''', (status, _encode(output), error, to_iso(utcnow()), job_id))
        else:
            cursor.execute('UPDATE ai_processing_jobs SET status = ? WHERE id = ?',
                           (status, job_id))
        return cursor.rowcount > 0


def list_project_jobs(project_id: str) -> List[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT * FROM ai_processing_jobs WHERE project_id = ? ORDER BY created_at
        ''', (project_id,))
        return [_row_to_dict(row) for row in cursor.fetchall()]


# ==============================================================================
# SUBSCRIPTIONS & PAYMENTS
# ==============================================================================

def get_subscription(paypal_subscription_id: str) -> Optional[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM subscriptions WHERE paypal_subscription_id = ?',
                       (paypal_subscription_id,))
        return _row_to_dict(cursor.fetchone())


def get_latest_subscription_for_user(user_id: str) -> Optional[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT * FROM subscriptions WHERE user_id = ?
            ORDER BY created_at DESC LIMIT 1
        ''', (user_id,))
        return _row_to_dict(cursor.fetchone())


def create_subscription_record(user_id: str, paypal_subscription_id: str,
                               plan_id: str, status: str = 'pending') -> Dict:
    now = to_iso(utcnow())
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO subscriptions (id, user_id, paypal_subscription_id, plan_id,
                                       paypal_plan_id, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (new_id(), user_id, paypal_subscription_id, plan_id, plan_id, status, now, now))
    return get_subscription(paypal_subscription_id)


def upsert_subscription(paypal_subscription_id: str, status: str,
                        period_start: datetime, period_end: datetime,
                        user_id: Optional[str] = None, plan_id: Optional[str] = None) -> Dict:
    """Insert or update a subscription keyed by its PayPal id.

    On update only status and the billing period change; user and plan are
    taken from the create branch only.
    """
    now = to_iso(utcnow())
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO subscriptions (id, user_id, paypal_subscription_id, plan_id,
                                       paypal_plan_id, status, current_period_start,
                                       current_period_end, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(paypal_subscription_id) DO UPDATE SET
                status = excluded.status,
                current_period_start = excluded.current_period_start,
                current_period_end = excluded.current_period_end,
                updated_at = excluded.updated_at
        ''', (new_id(), user_id, paypal_subscription_id, plan_id, plan_id, status,
              to_iso(period_start), to_iso(period_end), now, now))
    return get_subscription(paypal_subscription_id)


def update_subscription_status(paypal_subscription_id: str, status: str,
                               cancel_at_period_end: Optional[bool] = None) -> bool:
    """Update status of an existing subscription. Raises LookupError when missing."""
    with get_db() as conn:
        cursor = conn.cursor()
        if cancel_at_period_end is None:
            cursor.execute('''
                UPDATE subscriptions SET status = ?, updated_at = ?
                WHERE paypal_subscription_id = ?
            ''', (status, to_iso(utcnow()), paypal_subscription_id))
        else:
            cursor.execute('''
                UPDATE subscriptions SET status = ?, cancel_at_period_end = ?, updated_at = ?
                WHERE paypal_subscription_id = ?
            ''', (status, int(cancel_at_period_end), to_iso(utcnow()), paypal_subscription_id))
        if cursor.rowcount == 0:
            raise LookupError(f"Subscription not found: {paypal_subscription_id}")
        return True


def count_active_subscriptions() -> int:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM subscriptions WHERE status = 'active'")
        return cursor.fetchone()[0]


def create_payment(subscription_id: Optional[str], paypal_payment_id: str, amount: float,
                   currency: str, status: str, payment_date: datetime,
                   metadata: Optional[Dict] = None) -> Dict:
    payment_id = new_id()
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO payments (id, subscription_id, paypal_payment_id, amount, currency,
                                  status, payment_date, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (payment_id, subscription_id, paypal_payment_id, amount, currency, status,
              to_iso(payment_date), _encode(metadata), to_iso(utcnow())))
        cursor.execute('SELECT * FROM payments WHERE id = ?', (payment_id,))
        return _row_to_dict(cursor.fetchone())


def sum_completed_payments_since(since: datetime) -> float:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT COALESCE(SUM(amount), 0) FROM payments
            WHERE status = 'completed' AND payment_date >= ?
        ''', (to_iso(since),))
        return float(cursor.fetchone()[0])


# ==============================================================================
# ANALYTICS, NOTIFICATIONS, AUDIT
# ==============================================================================

def track_usage(user_id: Optional[str], action: str, metadata: Optional[Dict] = None) -> int:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO usage_analytics (user_id, action, metadata, created_at)
            VALUES (?, ?, ?, ?)
        ''', (user_id, action, _encode(metadata or {}), to_iso(utcnow())))
        return cursor.lastrowid


def get_usage_events(user_id: str, action: Optional[str] = None) -> List[Dict]:
    query = 'SELECT * FROM usage_analytics WHERE user_id = ?'
    params: List[Any] = [user_id]
    if action:
        query += ' AND action = ?'
        params.append(action)
    query += ' ORDER BY id'
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(query, params)
        return [_row_to_dict(row) for row in cursor.fetchall()]


def create_notification(user_id: str, type: str, title: str, message: str) -> int:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO notifications (user_id, type, title, message, created_at)
            VALUES (?, ?, ?, ?, ?)
        ''', (user_id, type, title, message, to_iso(utcnow())))
        return cursor.lastrowid


def get_user_notifications(user_id: str, unread_only: bool = False) -> List[Dict]:
    query = '''
        SELECT id, type, title, message, is_read, created_at
        FROM notifications WHERE user_id = ?
    '''
    if unread_only:
        query += ' AND is_read = 0'
    query += ' ORDER BY id DESC'
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(query, (user_id,))
        return [dict(row) for row in cursor.fetchall()]


def mark_notification_read(notification_id: int, user_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?
        ''', (notification_id, user_id))
        return cursor.rowcount > 0


def log_admin_action(admin_user_id: str, action: str, target_type: Optional[str] = None,
                     target_id: Optional[str] = None, metadata: Optional[Dict] = None) -> int:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO admin_audit_logs (admin_user_id, action, target_type, target_id,
                                          metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (admin_user_id, action, target_type, target_id, _encode(metadata),
              to_iso(utcnow())))
        return cursor.lastrowid


def get_audit_logs(limit: int = 100) -> List[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT * FROM admin_audit_logs ORDER BY id DESC LIMIT ?
        ''', (limit,))
        return [_row_to_dict(row) for row in cursor.fetchall()]
