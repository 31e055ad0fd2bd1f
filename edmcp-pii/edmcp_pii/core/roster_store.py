"""
SQLite persistence for rosters, groups, course names, variation
overrides and pending files.

Rows are scoped by owner (the instructor account) and course. Roster and
group rows are upserted on every sync and only deleted by an explicit
clear for the course.
"""

import secrets
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

import regex

from edmcp_core import DatabaseManager, retry_with_backoff
from edmcp_pii.core.config import DEFAULT_STUDENT_ID_PATTERN
from edmcp_pii.core.context_cache import CourseSnapshot
from edmcp_pii.core.models import DEFAULT_ROLE, GroupEntry, GroupRecord, Participant, RosterEntry, Variation
from edmcp_pii.core.variations import normalize

# A locked database is worth a few quick retries; anything else is a real error.
db_retry = retry_with_backoff(
    retries=3,
    backoff_in_seconds=0.1,
    max_wait_in_seconds=1,
    exceptions=sqlite3.OperationalError,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RosterStore:
    """Roster and group storage on top of the shared edmcp database."""

    def __init__(self, db: DatabaseManager, student_id_pattern: str = DEFAULT_STUDENT_ID_PATTERN,
                 email_domain: Optional[str] = None):
        self.db = db
        self.email_domain = email_domain
        self._student_id_re = regex.compile(r"\b(" + student_id_pattern + r")\b", regex.IGNORECASE)
        self._create_tables()

    def _create_tables(self):
        """Create PII tables if they don't exist."""
        with self.db.lock:
            cursor = self.db.conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS pii_rosters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id TEXT NOT NULL,
                    course_id INTEGER NOT NULL,
                    anchor_id INTEGER NOT NULL,
                    display_name TEXT NOT NULL,
                    student_id TEXT,
                    email TEXT,
                    role TEXT NOT NULL DEFAULT 'student',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (owner_id, course_id, anchor_id)
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS roster_course_idx ON pii_rosters (owner_id, course_id)"
            )

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS pii_groups (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id TEXT NOT NULL,
                    course_id INTEGER NOT NULL,
                    group_id INTEGER NOT NULL,
                    group_name TEXT NOT NULL,
                    description TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (owner_id, course_id, group_id)
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS group_course_idx ON pii_groups (owner_id, course_id)"
            )

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS pii_courses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id TEXT NOT NULL,
                    course_id INTEGER NOT NULL,
                    course_name TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (owner_id, course_id)
                )
            """)

            # Custom variations, plus switches on generated ones (auto_generated = 1).
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS pii_variations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id TEXT NOT NULL,
                    course_id INTEGER NOT NULL,
                    anchor_id INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    normalized TEXT NOT NULL,
                    auto_generated INTEGER NOT NULL DEFAULT 0,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    UNIQUE (owner_id, course_id, anchor_id, normalized)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS pii_files (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    course_id INTEGER NOT NULL,
                    filename TEXT NOT NULL,
                    mime_type TEXT NOT NULL,
                    content BLOB NOT NULL,
                    is_unmasked INTEGER NOT NULL DEFAULT 0,
                    expires_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    downloaded_at TEXT
                )
            """)

            self.db.conn.commit()

    # ------------------------------------------------------------------
    # Rosters
    # ------------------------------------------------------------------

    def _normalize_participant(self, participant: Participant) -> Dict[str, Any]:
        role = participant.roles[0].lower() if participant.roles else DEFAULT_ROLE

        student_id = participant.student_id
        if not student_id:
            match = self._student_id_re.search(participant.name)
            if match:
                student_id = match.group(1).upper()

        email = participant.email
        if not email and student_id and self.email_domain:
            email = f"{student_id.lower()}@{self.email_domain}"

        return {
            "anchor_id": participant.id,
            "display_name": participant.name,
            "student_id": student_id or None,
            "email": email or None,
            "role": role,
        }

    def sync_roster(self, owner_id: str, course_id: int,
                    participants: Iterable[Union[Participant, Dict[str, Any]]]) -> int:
        """
        Upserts participants for a course.

        Records without an id or a name are skipped. Returns the number of
        rows written.
        """
        now = _now()
        written = 0
        with self.db.lock:
            for item in participants:
                participant = item if isinstance(item, Participant) else Participant.from_dict(item)
                if participant is None:
                    continue
                row = self._normalize_participant(participant)
                self.db.conn.execute(
                    """
                    INSERT INTO pii_rosters
                        (owner_id, course_id, anchor_id, display_name, student_id, email, role, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (owner_id, course_id, anchor_id) DO UPDATE SET
                        display_name = excluded.display_name,
                        student_id = excluded.student_id,
                        email = excluded.email,
                        role = excluded.role,
                        updated_at = excluded.updated_at
                    """,
                    (owner_id, course_id, row["anchor_id"], row["display_name"], row["student_id"],
                     row["email"], row["role"], now, now),
                )
                written += 1
            self.db.conn.commit()
        return written

    @db_retry
    def get_roster(self, owner_id: str, course_id: int) -> List[RosterEntry]:
        rows = self.db.fetch_all(
            "SELECT * FROM pii_rosters WHERE owner_id = ? AND course_id = ? ORDER BY anchor_id",
            (owner_id, course_id),
        )
        return [RosterEntry.from_row(row) for row in rows]

    @db_retry
    def get_all_rosters(self, owner_id: str) -> List[RosterEntry]:
        rows = self.db.fetch_all(
            "SELECT * FROM pii_rosters WHERE owner_id = ? ORDER BY course_id, anchor_id",
            (owner_id,),
        )
        return [RosterEntry.from_row(row) for row in rows]

    @db_retry
    def find_by_anchor_id(self, owner_id: str, course_id: int, anchor_id: int) -> Optional[RosterEntry]:
        row = self.db.fetch_one(
            "SELECT * FROM pii_rosters WHERE owner_id = ? AND course_id = ? AND anchor_id = ?",
            (owner_id, course_id, anchor_id),
        )
        return RosterEntry.from_row(row) if row else None

    def clear_roster(self, owner_id: str, course_id: int) -> int:
        cursor = self.db.execute(
            "DELETE FROM pii_rosters WHERE owner_id = ? AND course_id = ?", (owner_id, course_id)
        )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def sync_groups(self, owner_id: str, course_id: int,
                    groups: Iterable[Union[GroupRecord, Dict[str, Any]]]) -> int:
        now = _now()
        written = 0
        with self.db.lock:
            for item in groups:
                group = item if isinstance(item, GroupRecord) else GroupRecord.from_dict(item)
                if group is None:
                    continue
                self.db.conn.execute(
                    """
                    INSERT INTO pii_groups
                        (owner_id, course_id, group_id, group_name, description, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (owner_id, course_id, group_id) DO UPDATE SET
                        group_name = excluded.group_name,
                        description = excluded.description,
                        updated_at = excluded.updated_at
                    """,
                    (owner_id, course_id, group.id, group.name, group.description, now, now),
                )
                written += 1
            self.db.conn.commit()
        return written

    @db_retry
    def get_groups(self, owner_id: str, course_id: int) -> List[GroupEntry]:
        rows = self.db.fetch_all(
            "SELECT * FROM pii_groups WHERE owner_id = ? AND course_id = ? ORDER BY group_id",
            (owner_id, course_id),
        )
        return [GroupEntry.from_row(row) for row in rows]

    @db_retry
    def find_group(self, owner_id: str, course_id: int, group_id: int) -> Optional[GroupEntry]:
        row = self.db.fetch_one(
            "SELECT * FROM pii_groups WHERE owner_id = ? AND course_id = ? AND group_id = ?",
            (owner_id, course_id, group_id),
        )
        return GroupEntry.from_row(row) if row else None

    def clear_groups(self, owner_id: str, course_id: int) -> int:
        cursor = self.db.execute(
            "DELETE FROM pii_groups WHERE owner_id = ? AND course_id = ?", (owner_id, course_id)
        )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Courses
    # ------------------------------------------------------------------

    def upsert_course_name(self, owner_id: str, course_id: int, course_name: str) -> None:
        now = _now()
        self.db.execute(
            """
            INSERT INTO pii_courses (owner_id, course_id, course_name, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (owner_id, course_id) DO UPDATE SET
                course_name = excluded.course_name,
                updated_at = excluded.updated_at
            """,
            (owner_id, course_id, course_name, now, now),
        )

    @db_retry
    def get_user_courses(self, owner_id: str) -> List[Dict[str, Any]]:
        return self.db.fetch_all(
            "SELECT course_id, course_name, updated_at FROM pii_courses WHERE owner_id = ? ORDER BY course_id",
            (owner_id,),
        )

    @db_retry
    def get_course_name(self, owner_id: str, course_id: int) -> Optional[str]:
        row = self.db.fetch_one(
            "SELECT course_name FROM pii_courses WHERE owner_id = ? AND course_id = ?",
            (owner_id, course_id),
        )
        return row["course_name"] if row else None

    # ------------------------------------------------------------------
    # Variation overrides
    # ------------------------------------------------------------------

    def save_variation(self, owner_id: str, course_id: int, anchor_id: int, text: str,
                       auto_generated: bool = False, enabled: bool = True) -> Variation:
        """Stores a custom variation, or an enabled/disabled switch for a generated one."""
        key = normalize(text)
        if not key:
            raise ValueError("Variation text is empty")
        self.db.execute(
            """
            INSERT INTO pii_variations
                (owner_id, course_id, anchor_id, text, normalized, auto_generated, enabled, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (owner_id, course_id, anchor_id, normalized) DO UPDATE SET
                text = excluded.text,
                auto_generated = excluded.auto_generated,
                enabled = excluded.enabled
            """,
            (owner_id, course_id, anchor_id, " ".join(text.split()), key,
             int(auto_generated), int(enabled), _now()),
        )
        return Variation(anchor_id=anchor_id, text=" ".join(text.split()), normalized=key,
                         auto_generated=auto_generated, enabled=enabled)

    def delete_variation(self, owner_id: str, course_id: int, anchor_id: int, text: str) -> bool:
        cursor = self.db.execute(
            "DELETE FROM pii_variations WHERE owner_id = ? AND course_id = ? AND anchor_id = ? AND normalized = ?",
            (owner_id, course_id, anchor_id, normalize(text)),
        )
        return cursor.rowcount > 0

    @db_retry
    def get_variation_overrides(self, owner_id: str, course_id: int) -> List[Variation]:
        rows = self.db.fetch_all(
            "SELECT * FROM pii_variations WHERE owner_id = ? AND course_id = ? ORDER BY id",
            (owner_id, course_id),
        )
        return [
            Variation(
                anchor_id=int(row["anchor_id"]),
                text=row["text"],
                normalized=row["normalized"],
                auto_generated=bool(row["auto_generated"]),
                enabled=bool(row["enabled"]),
            )
            for row in rows
        ]

    def load_snapshot(self, owner_id: str, course_id: int) -> CourseSnapshot:
        """Everything the roster index needs for one course; the context cache loader."""
        return CourseSnapshot(
            roster=tuple(self.get_roster(owner_id, course_id)),
            groups=tuple(self.get_groups(owner_id, course_id)),
            overrides=tuple(self.get_variation_overrides(owner_id, course_id)),
        )

    # ------------------------------------------------------------------
    # Pending files
    # ------------------------------------------------------------------

    def store_pending_file(self, owner_id: str, course_id: int, filename: str, mime_type: str,
                           content: bytes, ttl_seconds: int = 3600) -> str:
        """Stores a masked file for later unmasked download. Returns the file id."""
        file_id = secrets.token_hex(16)
        now = datetime.now(timezone.utc)
        self.db.execute(
            """
            INSERT INTO pii_files (id, owner_id, course_id, filename, mime_type, content, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (file_id, owner_id, course_id, filename, mime_type, sqlite3.Binary(content),
             (now + timedelta(seconds=ttl_seconds)).isoformat(), now.isoformat()),
        )
        return file_id

    @db_retry
    def get_pending_file(self, file_id: str) -> Optional[Dict[str, Any]]:
        """Returns the stored file, or None if it does not exist or has expired."""
        row = self.db.fetch_one(
            "SELECT * FROM pii_files WHERE id = ? AND expires_at > ?", (file_id, _now())
        )
        if row:
            row["content"] = bytes(row["content"])
        return row

    def mark_file_downloaded(self, file_id: str) -> None:
        self.db.execute(
            "UPDATE pii_files SET is_unmasked = 1, downloaded_at = ? WHERE id = ?", (_now(), file_id)
        )

    def purge_expired_files(self) -> int:
        cursor = self.db.execute("DELETE FROM pii_files WHERE expires_at <= ?", (_now(),))
        return cursor.rowcount
