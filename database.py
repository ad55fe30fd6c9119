# database.py
import sqlite3
import os
import logging
from datetime import datetime, timezone
import re
from patlog import config

IGNORABLE_ERROR_SNIPPETS = (
    "duplicate column name",
    "already exists",
)

INSPECTION_COLUMNS = (
    "inspection_date", "reinspection_date", "inspector", "serial", "description",
    "location", "equipment_class", "visual_pass", "fuse_rating", "earth_ohms",
    "insulation_mohms", "leakage", "passed", "comments", "manufacturer",
    "equipment_power", "appliance_plug_check", "load_test", "rcd_trip_time",
    "image_blob_id",
)

USER_UPDATABLE_COLUMNS = ("email", "password_digest", "inspection_limit")

# ==============================================================================
# SECTION 1: CONNECTION CONTEXT MANAGER
# ==============================================================================

class DatabaseConnection:
    """
    Context manager around a SQLite connection.
    Opens, commits or rolls back, and closes automatically.
    """
    def __init__(self, db_name=None):
        self.db_name = db_name or config.DB_PATH
        self.conn = None

    def __enter__(self):
        try:
            os.makedirs(os.path.dirname(os.path.abspath(self.db_name)), exist_ok=True)
            self.conn = sqlite3.connect(self.db_name)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON;")
            return self.conn
        except sqlite3.Error as e:
            logging.error(f"Database connection error: {e}", exc_info=True)
            raise

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            logging.warning(f"Exception inside a DB transaction, rolling back. Error: {exc_val}")
            if self.conn is not None:
                self.conn.rollback()
        else:
            if self.conn is not None:
                self.conn.commit()

        if self.conn is not None:
            self.conn.close()
        return False

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='microseconds')

# ==============================================================================
# SECTION 2: MIGRATIONS
# ==============================================================================

def _execute_sql_script_compat(conn, sql_script: str) -> None:
    """
    Runs a SQL script on SQLite builds without 'ADD COLUMN IF NOT EXISTS'.
    - strips 'IF NOT EXISTS' only after 'ADD COLUMN'
    - runs statements one at a time
    - ignores idempotent errors (column/object already present)
    """
    script = re.sub(
        r'(?i)(ADD\s+COLUMN)\s+IF\s+NOT\s+EXISTS',
        r'\1',
        sql_script,
    )
    # Drop full-line comments before splitting on ';'
    script = "\n".join(line for line in script.splitlines() if not line.strip().startswith("--"))

    statements = [s.strip() for s in script.split(';') if s.strip()]
    cur = conn.cursor()
    for stmt in statements:
        try:
            cur.execute(stmt)
        except sqlite3.OperationalError as e:
            msg = str(e).lower()
            if any(snippet in msg for snippet in IGNORABLE_ERROR_SNIPPETS):
                logging.info(f"[migrate] Skipping statement already applied: {stmt[:120]}... ({e})")
                continue
            logging.warning(f"[migrate] Error executing: {stmt}\n-> {e}")
            raise
    cur.close()

def migrate_database(db_path=None, migrations_path=None):
    """Applies the numbered SQL migrations in order."""
    migrations_path = migrations_path or config.MIGRATIONS_DIR
    if not os.path.isdir(migrations_path):
        logging.info(f"Migrations folder '{migrations_path}' not found. Migration skipped.")
        return

    try:
        with DatabaseConnection(db_path) as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL);")
            result = conn.execute("SELECT version FROM schema_version;").fetchone()
            current_version = result['version'] if result else 0
            has_version_row = result is not None

        migration_files = sorted([f for f in os.listdir(migrations_path) if f.endswith('.sql')])

        for m_file in migration_files:
            try:
                file_version = int(m_file.split('_')[0])
            except (ValueError, IndexError):
                logging.warning(f"Migration file '{m_file}' is not named correctly. Ignored.")
                continue

            if file_version > current_version:
                logging.info(f"Applying migration: {m_file}...")
                with open(os.path.join(migrations_path, m_file), 'r', encoding='utf-8') as f:
                    sql_script = f.read()

                with DatabaseConnection(db_path) as conn:
                    _execute_sql_script_compat(conn, sql_script)
                    if has_version_row:
                        conn.execute("UPDATE schema_version SET version = ?", (file_version,))
                    else:
                        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (file_version,))
                        has_version_row = True

                current_version = file_version
                logging.info(f"Database upgraded to version {current_version}.")
    except Exception:
        logging.critical("Critical error while migrating the database.", exc_info=True)
        raise

# ==============================================================================
# SECTION 3: DATA ACCESS (DAO)
# ==============================================================================

# --- Users ---

_USER_SELECT = """
    SELECT u.*, (SELECT COUNT(*) FROM inspections i WHERE i.user_id = u.id) AS inspection_count
    FROM users u
"""

def create_user(email: str, password_digest: str, inspection_limit: int, timestamp: str) -> int:
    """
    Inserts a user. The admin flag is computed in the same statement, so only
    the row that finds the table empty becomes admin.
    """
    with DatabaseConnection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO users (email, password_digest, admin, inspection_limit, created_at, updated_at)
            VALUES (?, ?, (SELECT COUNT(*) = 0 FROM users), ?, ?, ?)
            """,
            (email, password_digest, inspection_limit, timestamp, timestamp)
        )
        return cursor.lastrowid

def get_user_by_id(user_id: int):
    with DatabaseConnection() as conn:
        return conn.execute(_USER_SELECT + " WHERE u.id = ?", (user_id,)).fetchone()

def get_user_by_email(email: str):
    if not email: return None
    with DatabaseConnection() as conn:
        return conn.execute(_USER_SELECT + " WHERE u.email = ? COLLATE NOCASE", (email.strip(),)).fetchone()

def get_all_users():
    with DatabaseConnection() as conn:
        return conn.execute(_USER_SELECT + " ORDER BY u.id").fetchall()

def email_taken(email: str, exclude_user_id=None) -> bool:
    with DatabaseConnection() as conn:
        query = "SELECT 1 FROM users WHERE email = ? COLLATE NOCASE"
        params = [email]
        if exclude_user_id is not None:
            query += " AND id != ?"
            params.append(exclude_user_id)
        return conn.execute(query, tuple(params)).fetchone() is not None

def update_user(user_id: int, fields: dict, timestamp: str) -> int:
    fields = {k: v for k, v in fields.items() if k in USER_UPDATABLE_COLUMNS}
    if not fields:
        return 0
    assignments = ", ".join(f"{column} = ?" for column in fields)
    with DatabaseConnection() as conn:
        cursor = conn.execute(
            f"UPDATE users SET {assignments}, updated_at = ? WHERE id = ?",
            (*fields.values(), timestamp, user_id)
        )
        return cursor.rowcount

def delete_user(user_id: int) -> int:
    """Deletes a user; inspections go with it through ON DELETE CASCADE."""
    with DatabaseConnection() as conn:
        return conn.execute("DELETE FROM users WHERE id = ?", (user_id,)).rowcount

# --- Inspections ---

_INSPECTION_SELECT = """
    SELECT i.*, b.key AS blob_key, b.filename AS blob_filename,
           b.content_type AS blob_content_type, b.byte_size AS blob_byte_size,
           b.created_at AS blob_created_at
    FROM inspections i
    LEFT JOIN blobs b ON b.id = i.image_blob_id
"""

_NEWEST_FIRST = " ORDER BY i.created_at DESC, i.rowid DESC"

def insert_inspection(inspection_id: str, user_id: int, values: dict, timestamp: str) -> None:
    values = {k: v for k, v in values.items() if k in INSPECTION_COLUMNS}
    columns = ["id", "user_id", *values.keys(), "created_at", "updated_at"]
    placeholders = ", ".join("?" for _ in columns)
    with DatabaseConnection() as conn:
        conn.execute(
            f"INSERT INTO inspections ({', '.join(columns)}) VALUES ({placeholders})",
            (inspection_id, user_id, *values.values(), timestamp, timestamp)
        )

def update_inspection(inspection_id: str, values: dict, timestamp: str) -> int:
    values = {k: v for k, v in values.items() if k in INSPECTION_COLUMNS}
    if not values:
        return 0
    assignments = ", ".join(f"{column} = ?" for column in values)
    with DatabaseConnection() as conn:
        cursor = conn.execute(
            f"UPDATE inspections SET {assignments}, updated_at = ? WHERE id = ?",
            (*values.values(), timestamp, inspection_id)
        )
        return cursor.rowcount

def delete_inspection(inspection_id: str) -> int:
    with DatabaseConnection() as conn:
        return conn.execute("DELETE FROM inspections WHERE id = ?", (inspection_id,)).rowcount

def inspection_id_exists(inspection_id: str) -> bool:
    with DatabaseConnection() as conn:
        return conn.execute("SELECT 1 FROM inspections WHERE id = ?", (inspection_id,)).fetchone() is not None

def get_inspection_by_id(inspection_id: str):
    """Case-insensitive lookup: ids are stored lowercase."""
    if not inspection_id: return None
    with DatabaseConnection() as conn:
        return conn.execute(_INSPECTION_SELECT + " WHERE i.id = ?", (inspection_id.strip().lower(),)).fetchone()

def get_inspections_for_user(user_id: int):
    with DatabaseConnection() as conn:
        return conn.execute(_INSPECTION_SELECT + " WHERE i.user_id = ?" + _NEWEST_FIRST, (user_id,)).fetchall()

def _escape_like(term: str) -> str:
    return term.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')

def _lower(text):
    return text.lower() if text is not None else None

def search_inspections_for_user(user_id: int, search_term: str):
    """Serial contains search_term, case-insensitive, wildcards matched literally."""
    pattern = f"%{_escape_like(search_term.lower())}%"
    with DatabaseConnection() as conn:
        # SQLite LOWER() only folds ASCII
        conn.create_function("py_lower", 1, _lower, deterministic=True)
        return conn.execute(
            _INSPECTION_SELECT + " WHERE i.user_id = ? AND py_lower(i.serial) LIKE ? ESCAPE '\\'" + _NEWEST_FIRST,
            (user_id, pattern)
        ).fetchall()

def get_overdue_inspections_for_user(user_id: int, today: str):
    with DatabaseConnection() as conn:
        return conn.execute(
            _INSPECTION_SELECT + """
            WHERE i.user_id = ? AND i.reinspection_date IS NOT NULL AND i.reinspection_date < ?
            ORDER BY i.reinspection_date ASC
            """,
            (user_id, today)
        ).fetchall()

def count_inspections_for_user(user_id: int) -> int:
    with DatabaseConnection() as conn:
        return conn.execute("SELECT COUNT(*) FROM inspections WHERE user_id = ?", (user_id,)).fetchone()[0]

def touch_pdf_accessed(inspection_id: str, timestamp: str) -> None:
    with DatabaseConnection() as conn:
        conn.execute("UPDATE inspections SET last_pdf_accessed_at = ? WHERE id = ?", (timestamp, inspection_id))

def get_image_blob_ids_for_user(user_id: int) -> list:
    with DatabaseConnection() as conn:
        rows = conn.execute(
            "SELECT image_blob_id FROM inspections WHERE user_id = ? AND image_blob_id IS NOT NULL",
            (user_id,)
        ).fetchall()
        return [row['image_blob_id'] for row in rows]

# --- Blobs ---

def insert_blob(key: str, filename: str, content_type: str, byte_size: int, timestamp: str) -> int:
    with DatabaseConnection() as conn:
        cursor = conn.execute(
            "INSERT INTO blobs (key, filename, content_type, byte_size, created_at) VALUES (?, ?, ?, ?, ?)",
            (key, filename, content_type, byte_size, timestamp)
        )
        return cursor.lastrowid

def get_blob_by_id(blob_id: int):
    with DatabaseConnection() as conn:
        return conn.execute("SELECT * FROM blobs WHERE id = ?", (blob_id,)).fetchone()

def get_blob_by_key(key: str):
    with DatabaseConnection() as conn:
        return conn.execute("SELECT * FROM blobs WHERE key = ?", (key,)).fetchone()

def delete_blob(blob_id: int) -> int:
    """Returns 0 when the row was already gone."""
    with DatabaseConnection() as conn:
        return conn.execute("DELETE FROM blobs WHERE id = ?", (blob_id,)).rowcount

def get_attached_blobs():
    with DatabaseConnection() as conn:
        return conn.execute(
            """
            SELECT b.*, i.id AS inspection_id, i.serial AS inspection_serial
            FROM blobs b
            JOIN inspections i ON i.image_blob_id = b.id
            ORDER BY b.created_at DESC
            """
        ).fetchall()

def get_orphaned_blobs(created_before=None):
    """Blobs no inspection references, optionally only those older than created_before."""
    query = """
        SELECT b.* FROM blobs b
        WHERE NOT EXISTS (SELECT 1 FROM inspections i WHERE i.image_blob_id = b.id)
    """
    params = []
    if created_before is not None:
        query += " AND b.created_at <= ?"
        params.append(created_before)
    with DatabaseConnection() as conn:
        return conn.execute(query + " ORDER BY b.created_at", tuple(params)).fetchall()
