import logging
import os
import sqlite3
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv

# Make sure .env is read before the database path is resolved, regardless of
# the order in which modules are imported.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file. Tests and the CLI override it through configure().
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or "libdesk.db"

DEFAULT_ROLES = [
    ("admin", "Full access to the admin console"),
    ("librarian", "Manages catalog, reservations and fines"),
    ("reader", "Browses the catalog and reserves books"),
]


def configure(db_file: str) -> None:
    """Point every module-level helper at another database file."""
    global DATABASE_FILE
    DATABASE_FILE = db_file


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database."""
    conn = sqlite3.connect(db_file or DATABASE_FILE)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def _columns(cursor: sqlite3.Cursor, table: str) -> list:
    cursor.execute(f"PRAGMA table_info({table})")
    return [column[1] for column in cursor.fetchall()]


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    cursor = conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS shelves (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            category TEXT NOT NULL,
            capacity INTEGER NOT NULL CHECK(capacity >= 1),
            shelf_number INTEGER NOT NULL UNIQUE,
            pos_x INTEGER NOT NULL DEFAULT 0,
            pos_y INTEGER NOT NULL DEFAULT 0,
            last_reorganized TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            authors TEXT NOT NULL,
            isbn TEXT,
            genre TEXT,
            categorization TEXT,
            description TEXT,
            publication_year INTEGER,
            publisher TEXT,
            page_count INTEGER,
            language TEXT,
            cover TEXT,
            available_copies INTEGER NOT NULL DEFAULT 0,
            shelf_id INTEGER REFERENCES shelves(id) ON DELETE SET NULL,
            position INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_instances (
            id TEXT PRIMARY KEY,
            book_id TEXT NOT NULL REFERENCES books(id) ON DELETE CASCADE,
            instance_code TEXT NOT NULL UNIQUE,
            status TEXT NOT NULL DEFAULT 'available',
            condition TEXT NOT NULL DEFAULT 'good',
            purchase_price REAL,
            date_acquired TEXT,
            notes TEXT,
            shelf_id INTEGER REFERENCES shelves(id) ON DELETE SET NULL,
            position INTEGER,
            location TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            full_name TEXT NOT NULL,
            email TEXT NOT NULL UNIQUE,
            password_hash TEXT NOT NULL,
            phone TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            max_books_allowed INTEGER NOT NULL DEFAULT 5,
            loan_period_days INTEGER NOT NULL DEFAULT 14,
            must_change_password INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            last_login TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS roles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            description TEXT
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS user_roles (
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            role_id INTEGER NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
            assigned_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (user_id, role_id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS reservations (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            book_id TEXT NOT NULL REFERENCES books(id) ON DELETE CASCADE,
            book_instance_id TEXT REFERENCES book_instances(id) ON DELETE SET NULL,
            reservation_date TEXT NOT NULL,
            expiration_date TEXT NOT NULL,
            actual_return_date TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            notes TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS fines (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            reservation_id TEXT REFERENCES reservations(id) ON DELETE SET NULL,
            amount REAL NOT NULL CHECK(amount >= 0),
            reason TEXT NOT NULL,
            fine_type TEXT NOT NULL DEFAULT 'Other',
            notes TEXT,
            overdue_days INTEGER,
            is_paid INTEGER NOT NULL DEFAULT 0,
            paid_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS favorites (
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            book_id TEXT NOT NULL REFERENCES books(id) ON DELETE CASCADE,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (user_id, book_id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS queue_entries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            book_id TEXT NOT NULL REFERENCES books(id) ON DELETE CASCADE,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            status TEXT NOT NULL DEFAULT 'waiting',
            notified_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS notifications (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            message TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'GeneralInfo',
            priority TEXT NOT NULL DEFAULT 'Normal',
            is_read INTEGER NOT NULL DEFAULT 0,
            read_at TIMESTAMP,
            book_id TEXT,
            reservation_id TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS dialog_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            conversation_id TEXT NOT NULL,
            role TEXT NOT NULL,
            content TEXT NOT NULL,
            tool_name TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS api_usage_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            api_name TEXT NOT NULL,
            endpoint TEXT NOT NULL,
            success BOOLEAN NOT NULL,
            response_time_ms INTEGER,
            tokens_used INTEGER DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS journals (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            issn TEXT UNIQUE,
            registration_number TEXT,
            format TEXT NOT NULL DEFAULT 'Print',
            periodicity TEXT NOT NULL DEFAULT 'Monthly',
            pages_per_issue INTEGER NOT NULL DEFAULT 0,
            description TEXT,
            publisher TEXT,
            foundation_date TEXT,
            circulation INTEGER NOT NULL DEFAULT 0,
            is_open_access INTEGER NOT NULL DEFAULT 0,
            category TEXT NOT NULL DEFAULT 'Scientific',
            target_audience TEXT,
            is_peer_reviewed INTEGER NOT NULL DEFAULT 0,
            is_indexed_in_rints INTEGER NOT NULL DEFAULT 0,
            is_indexed_in_scopus INTEGER NOT NULL DEFAULT 0,
            is_indexed_in_web_of_science INTEGER NOT NULL DEFAULT 0,
            cover TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS journal_issues (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            journal_id INTEGER NOT NULL REFERENCES journals(id) ON DELETE CASCADE,
            volume_number INTEGER NOT NULL,
            issue_number INTEGER NOT NULL,
            publication_date TEXT NOT NULL,
            page_count INTEGER NOT NULL,
            cover TEXT,
            circulation INTEGER,
            special_theme TEXT,
            shelf_id INTEGER REFERENCES shelves(id) ON DELETE SET NULL,
            position INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (journal_id, volume_number, issue_number)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS articles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            issue_id INTEGER NOT NULL REFERENCES journal_issues(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            authors TEXT NOT NULL,
            abstract TEXT,
            start_page INTEGER NOT NULL,
            end_page INTEGER NOT NULL,
            keywords TEXT,
            doi TEXT,
            type TEXT NOT NULL DEFAULT 'Research',
            full_text TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # Columns added after the first release; older files get them here.
    book_columns = _columns(cursor, "books")
    for name, ddl in (
        ("udk", "TEXT"),
        ("bbk", "TEXT"),
        ("edition", "TEXT"),
    ):
        if name not in book_columns:
            cursor.execute(f"ALTER TABLE books ADD COLUMN {name} {ddl}")

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_authors ON books(authors)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_genre ON books(genre)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_shelf ON books(shelf_id, position)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_instances_book ON book_instances(book_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_instances_status ON book_instances(status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_reservations_user ON reservations(user_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_reservations_book ON reservations(book_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_reservations_status ON reservations(status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_fines_user ON fines(user_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_queue_book ON queue_entries(book_id, status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, is_read)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_issues_journal ON journal_issues(journal_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_articles_issue ON articles(issue_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_dialog_conversation ON dialog_history(conversation_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_api_usage_logs_created_at ON api_usage_logs(created_at)")

    for name, description in DEFAULT_ROLES:
        cursor.execute("INSERT OR IGNORE INTO roles (name, description) VALUES (?, ?)", (name, description))

    conn.commit()
    conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Create tables and seed data if needed."""
    create_tables(db_file)
    logger.debug("Database ready at %s", db_file or DATABASE_FILE)


def timestamp() -> str:
    """Current local time in the format stored by every table."""
    return datetime.now().isoformat(timespec="seconds")
