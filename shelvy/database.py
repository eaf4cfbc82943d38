import os
import sqlite3
import tempfile
import uuid
from datetime import datetime, timezone

from dotenv import load_dotenv

# Environment must be loaded before DATABASE_FILE is resolved.
load_dotenv()

# Database file precedence:
# 1) SHELVY_DB_FILE (explicit override)
# 2) SHELVY_DATA_FILE
# 3) a per-process temp file
DATABASE_FILE = (
    os.environ.get("SHELVY_DB_FILE")
    or os.environ.get("SHELVY_DATA_FILE")
    or os.path.join(tempfile.gettempdir(), f"shelvy_{os.getpid()}.db")
)


def get_db_connection() -> sqlite3.Connection:
    """Open a connection to the SQLite database with foreign keys enabled."""
    conn = sqlite3.connect(DATABASE_FILE)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def utc_now() -> str:
    """Current UTC time as a sortable ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def new_id() -> str:
    return str(uuid.uuid4())


def short_token(length: int) -> str:
    """Hex prefix of a random UUID; used for share ids and invite codes."""
    return uuid.uuid4().hex[:length]


def _ensure_columns(cursor: sqlite3.Cursor, table: str, columns: dict) -> None:
    cursor.execute(f"PRAGMA table_info({table})")
    existing = [column[1] for column in cursor.fetchall()]
    for name, ddl in columns.items():
        if name not in existing:
            cursor.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")


def create_tables() -> None:
    """Create every table the application needs if it does not exist yet."""
    conn = get_db_connection()
    cursor = conn.cursor()

    # Accounts
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS sessions (
            token_hash TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS password_resets (
            token_hash TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS user_roles (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            role TEXT NOT NULL CHECK (role IN ('admin', 'moderator', 'user')),
            created_at TEXT NOT NULL,
            UNIQUE (user_id, role)
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS migration_pending (
            user_id TEXT NOT NULL,
            email TEXT UNIQUE NOT NULL,
            created_at TEXT NOT NULL
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS profiles (
            user_id TEXT PRIMARY KEY,
            username TEXT NOT NULL,
            avatar_url TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS shelf_settings (
            id TEXT PRIMARY KEY,
            user_id TEXT UNIQUE NOT NULL,
            is_public INTEGER NOT NULL DEFAULT 1,
            share_id TEXT UNIQUE,
            display_name TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS notification_settings (
            user_id TEXT PRIMARY KEY,
            last_seen_likes_at TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """)

    # Shelf
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            color TEXT NOT NULL DEFAULT '#8B4513',
            status TEXT NOT NULL DEFAULT 'want-to-read'
                CHECK (status IN ('reading', 'want-to-read', 'read')),
            cover_url TEXT,
            completed_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    # Interactions
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_likes (
            id TEXT PRIMARY KEY,
            book_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (book_id, user_id),
            FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_comments (
            id TEXT PRIMARY KEY,
            book_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            content TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_notes (
            id TEXT PRIMARY KEY,
            book_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            content TEXT NOT NULL,
            color TEXT NOT NULL DEFAULT 'yellow',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (book_id, user_id),
            FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS follows (
            id TEXT PRIMARY KEY,
            follower_id TEXT NOT NULL,
            following_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (follower_id, following_id),
            CHECK (follower_id != following_id)
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_recommendations (
            id TEXT PRIMARY KEY,
            from_user_id TEXT NOT NULL,
            to_user_id TEXT NOT NULL,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            cover_url TEXT,
            message TEXT,
            isbn TEXT,
            description TEXT,
            categories TEXT,
            page_count INTEGER,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'accepted', 'declined')),
            created_at TEXT NOT NULL,
            responded_at TEXT
        )
    """)

    # Book clubs
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_clubs (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            invite_code TEXT UNIQUE NOT NULL,
            owner_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_club_members (
            id TEXT PRIMARY KEY,
            club_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            role TEXT NOT NULL DEFAULT 'member' CHECK (role IN ('owner', 'member')),
            joined_at TEXT NOT NULL,
            UNIQUE (club_id, user_id),
            FOREIGN KEY (club_id) REFERENCES book_clubs(id) ON DELETE CASCADE
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_club_suggestions (
            id TEXT PRIMARY KEY,
            club_id TEXT NOT NULL,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            cover_url TEXT,
            suggested_by TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'suggested'
                CHECK (status IN ('suggested', 'reading', 'read')),
            created_at TEXT NOT NULL,
            FOREIGN KEY (club_id) REFERENCES book_clubs(id) ON DELETE CASCADE
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_club_votes (
            id TEXT PRIMARY KEY,
            suggestion_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (suggestion_id, user_id),
            FOREIGN KEY (suggestion_id) REFERENCES book_club_suggestions(id) ON DELETE CASCADE
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_club_reflections (
            id TEXT PRIMARY KEY,
            club_id TEXT NOT NULL,
            suggestion_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            rating INTEGER NOT NULL CHECK (rating >= 1 AND rating <= 5),
            content TEXT NOT NULL,
            is_anonymous INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (suggestion_id, user_id),
            FOREIGN KEY (club_id) REFERENCES book_clubs(id) ON DELETE CASCADE,
            FOREIGN KEY (suggestion_id) REFERENCES book_club_suggestions(id) ON DELETE CASCADE
        )
    """)

    # Columns added after the first release
    _ensure_columns(cursor, "books", {
        "page_count": "INTEGER",
        "isbn": "TEXT",
        "description": "TEXT",
        "categories": "TEXT",  # JSON array
        "metadata_attempted_at": "TEXT",
        "isbndb_attempted_at": "TEXT",
    })
    _ensure_columns(cursor, "shelf_settings", {
        "shelf_skin": "TEXT DEFAULT 'oak'",
        "background_theme": "TEXT DEFAULT 'office'",
        "show_bookends": "INTEGER DEFAULT 1",
        "show_wood_grain": "INTEGER DEFAULT 1",
        "show_ambient_light": "INTEGER DEFAULT 1",
        "show_plant": "INTEGER DEFAULT 1",
        "decor_density": "TEXT DEFAULT 'balanced'",
    })
    # SQLite cannot add a column with a non-constant default, so backfill after adding.
    _ensure_columns(cursor, "notification_settings", {
        "last_seen_followers_at": "TEXT",
        "last_seen_recommendations_at": "TEXT",
    })
    cursor.execute(
        "UPDATE notification_settings SET last_seen_followers_at = created_at WHERE last_seen_followers_at IS NULL"
    )
    cursor.execute(
        "UPDATE notification_settings SET last_seen_recommendations_at = created_at "
        "WHERE last_seen_recommendations_at IS NULL"
    )
    _ensure_columns(cursor, "book_club_suggestions", {"finished_at": "TEXT"})
    cursor.execute(
        "UPDATE book_club_suggestions SET finished_at = created_at WHERE status = 'read' AND finished_at IS NULL"
    )

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_user_id ON books(user_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title_author ON books(title, author)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_likes_book_id ON book_likes(book_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_comments_book_id ON book_comments(book_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_follows_following_id ON follows(following_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_recommendations_to_user ON book_recommendations(to_user_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_club_members_user_id ON book_club_members(user_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_club_suggestions_club_id ON book_club_suggestions(club_id)")

    conn.commit()
    conn.close()


def initialize_database() -> None:
    """Create tables and apply column migrations."""
    create_tables()
