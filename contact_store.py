#!/usr/bin/env python3
"""
Contact Storage Layer

SQLite persistence for tracked contacts, their per-contact custom fields (where
reminder state lives), the conversation index, the reminder outbox and the
audit trail of cycle runs.
"""

import sqlite3
import logging
import time
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from reminder_engine import (
    ContactState, ReminderScheduler, parse_state_blob, current_time_ms
)

logger = logging.getLogger(__name__)

# ============================================================================
# CONTACT MODEL
# ============================================================================

@dataclass
class Contact:
    """A tracked person: stable identity, display name and known addresses"""
    id: int
    full_name: str
    addresses: List[str] = field(default_factory=list)

    @property
    def primary_address(self) -> str:
        return self.addresses[0] if self.addresses else ""

    @classmethod
    def from_db_row(cls, row: Dict[str, Any], addresses: Iterable[str]) -> 'Contact':
        return cls(
            id=row['id'],
            full_name=row.get('full_name') or '',
            addresses=[a for a in addresses if a],
        )

# ============================================================================
# DATABASE MANAGER - HANDLES ALL DATABASE OPERATIONS
# ============================================================================

class DatabaseManager:
    """Manages all database operations for keep-in-touch tracking"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._ensure_schema()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self):
        """Ensure all required tables exist"""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("PRAGMA foreign_keys = ON")
            self._create_contact_tables(conn)
            self._create_conversation_tables(conn)
            self._create_tracking_tables(conn)
            self._create_indexes(conn)

    def _create_contact_tables(self, conn: sqlite3.Connection):
        """Create contact, address, group and custom field tables"""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS contacts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                full_name TEXT NOT NULL DEFAULT '',
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS contact_addresses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                contact_id INTEGER NOT NULL,
                address TEXT,
                position INTEGER DEFAULT 0,
                FOREIGN KEY (contact_id) REFERENCES contacts(id)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS contact_groups (
                contact_id INTEGER NOT NULL,
                group_name TEXT NOT NULL,
                PRIMARY KEY (contact_id, group_name),
                FOREIGN KEY (contact_id) REFERENCES contacts(id)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS contact_custom_fields (
                contact_id INTEGER NOT NULL,
                label TEXT NOT NULL,
                value TEXT,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (contact_id, label),
                FOREIGN KEY (contact_id) REFERENCES contacts(id)
            )
        """)

    def _create_conversation_tables(self, conn: sqlite3.Connection):
        """Create the conversation index tables"""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                subject TEXT DEFAULT '',
                last_message_at INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS conversation_addresses (
                conversation_id TEXT NOT NULL,
                address TEXT NOT NULL,
                PRIMARY KEY (conversation_id, address),
                FOREIGN KEY (conversation_id) REFERENCES conversations(id)
            )
        """)

    def _create_tracking_tables(self, conn: sqlite3.Connection):
        """Create outbox and run audit tables"""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS reminder_outbox (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                contact_id INTEGER NOT NULL,
                recipient TEXT,
                subject TEXT,
                plain_body TEXT,
                html_body TEXT,
                conversation_id TEXT,
                created_at INTEGER NOT NULL,
                FOREIGN KEY (contact_id) REFERENCES contacts(id)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS reminder_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT UNIQUE NOT NULL,
                pass_name TEXT NOT NULL,
                started_at DATETIME NOT NULL,
                completed_at DATETIME,
                status TEXT NOT NULL,
                contacts_processed INTEGER DEFAULT 0,
                contacts_failed INTEGER DEFAULT 0,
                states_written INTEGER DEFAULT 0,
                reminders_due INTEGER DEFAULT 0,
                error_message TEXT
            )
        """)

    def _create_indexes(self, conn: sqlite3.Connection):
        indexes = [
            "CREATE INDEX IF NOT EXISTS idx_contact_addresses_contact ON contact_addresses(contact_id, position)",
            "CREATE INDEX IF NOT EXISTS idx_contact_groups_group ON contact_groups(group_name)",
            "CREATE INDEX IF NOT EXISTS idx_conversation_addresses_address ON conversation_addresses(address)",
            "CREATE INDEX IF NOT EXISTS idx_conversations_last_message ON conversations(last_message_at)",
            "CREATE INDEX IF NOT EXISTS idx_runs_pass_status ON reminder_runs(pass_name, status, completed_at)",
        ]
        for index_sql in indexes:
            try:
                conn.execute(index_sql)
            except sqlite3.OperationalError as e:
                logger.warning(f"Could not create index: {e}")

    def execute_with_retry(self, operation, max_attempts=3, backoff_base=2):
        """Execute database operation with retry and exponential backoff"""
        for attempt in range(max_attempts):
            try:
                return operation()
            except sqlite3.OperationalError as e:
                if attempt == max_attempts - 1:
                    logger.error(f"Database operation failed after {max_attempts} attempts: {e}")
                    raise
                sleep_time = backoff_base ** attempt
                logger.warning(f"Database retry {attempt + 1}/{max_attempts} after {sleep_time}s: {e}")
                time.sleep(sleep_time)

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def add_contact(self, full_name: str, addresses: Iterable[str] = (),
                    groups: Iterable[str] = ()) -> int:
        """Insert a contact with its addresses and group memberships"""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("INSERT INTO contacts (full_name) VALUES (?)", (full_name,))
            contact_id = cursor.lastrowid
            conn.executemany(
                "INSERT INTO contact_addresses (contact_id, address, position) VALUES (?, ?, ?)",
                [(contact_id, address, i) for i, address in enumerate(addresses)]
            )
            conn.executemany(
                "INSERT OR IGNORE INTO contact_groups (contact_id, group_name) VALUES (?, ?)",
                [(contact_id, group) for group in groups]
            )
            return contact_id

    def get_tracked_contacts(self, group: str) -> List[Contact]:
        """Get every contact in the tracked group, ordered by id"""
        with self.connect() as conn:
            rows = conn.execute("""
                SELECT c.id, c.full_name
                FROM contacts c
                JOIN contact_groups g ON g.contact_id = c.id
                WHERE g.group_name = ?
                ORDER BY c.id
            """, (group,)).fetchall()

            address_rows = conn.execute("""
                SELECT a.contact_id, a.address
                FROM contact_addresses a
                JOIN contact_groups g ON g.contact_id = a.contact_id
                WHERE g.group_name = ?
                ORDER BY a.contact_id, a.position, a.id
            """, (group,)).fetchall()

        addresses: Dict[int, List[str]] = {}
        for row in address_rows:
            addresses.setdefault(row['contact_id'], []).append(row['address'])

        return [Contact.from_db_row(dict(row), addresses.get(row['id'], [])) for row in rows]

    def get_custom_field(self, contact_id: int, label: str) -> Optional[str]:
        """Read a contact's custom field, None when the field does not exist"""
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT value FROM contact_custom_fields WHERE contact_id = ? AND label = ?",
                (contact_id, label)
            ).fetchone()
            return row[0] if row else None

    def set_custom_field(self, contact_id: int, label: str, value: str):
        """Create or overwrite a contact's custom field"""
        def _write():
            with sqlite3.connect(self.db_path) as conn:
                conn.execute("""
                    INSERT INTO contact_custom_fields (contact_id, label, value, updated_at)
                    VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT (contact_id, label)
                    DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
                """, (contact_id, label, value))

        self.execute_with_retry(_write)

    # ------------------------------------------------------------------
    # Conversation index
    # ------------------------------------------------------------------

    def record_conversation(self, conversation_id: str, last_message_at: int,
                            addresses: Iterable[str], subject: str = ""):
        """Insert or update an indexed conversation and its participant addresses"""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO conversations (id, subject, last_message_at)
                VALUES (?, ?, ?)
                ON CONFLICT (id)
                DO UPDATE SET subject = excluded.subject, last_message_at = excluded.last_message_at
            """, (conversation_id, subject, last_message_at))
            conn.executemany(
                "INSERT OR IGNORE INTO conversation_addresses (conversation_id, address) VALUES (?, ?)",
                [(conversation_id, address.strip().lower()) for address in addresses if address]
            )

    def find_latest_conversation(self, address: str) -> Optional[sqlite3.Row]:
        """Most recent conversation from or to the given address"""
        with self.connect() as conn:
            return conn.execute("""
                SELECT c.id, c.subject, c.last_message_at
                FROM conversations c
                JOIN conversation_addresses a ON a.conversation_id = c.id
                WHERE a.address = ?
                ORDER BY c.last_message_at DESC
                LIMIT 1
            """, (address.strip().lower(),)).fetchone()

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    def insert_outbox_message(self, contact_id: int, recipient: str, subject: str,
                              plain_body: str, html_body: str,
                              conversation_id: Optional[str], created_at: int) -> int:
        def _insert():
            with sqlite3.connect(self.db_path) as conn:
                cursor = conn.execute("""
                    INSERT INTO reminder_outbox
                    (contact_id, recipient, subject, plain_body, html_body, conversation_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (contact_id, recipient, subject, plain_body, html_body, conversation_id, created_at))
                return cursor.lastrowid

        return self.execute_with_retry(_insert)

    # ------------------------------------------------------------------
    # Run audit
    # ------------------------------------------------------------------

    def create_run(self, run_id: str, pass_name: str) -> int:
        """Record the start of a cycle pass"""
        def _create():
            with sqlite3.connect(self.db_path) as conn:
                cursor = conn.execute("""
                    INSERT INTO reminder_runs (run_id, pass_name, started_at, status)
                    VALUES (?, ?, ?, ?)
                """, (run_id, pass_name, datetime.now().isoformat(), 'started'))
                return cursor.lastrowid

        return self.execute_with_retry(_create)

    def update_run(self, run_pk: int, status: str, **kwargs):
        """Update a run record with its completion status and counts"""
        def _update():
            with sqlite3.connect(self.db_path) as conn:
                set_clauses = ['status = ?']
                params: List[Any] = [status]

                for key, value in kwargs.items():
                    set_clauses.append(f"{key} = ?")
                    params.append(value)

                if status in ['completed', 'failed']:
                    set_clauses.append('completed_at = ?')
                    params.append(datetime.now().isoformat())

                params.append(run_pk)
                query = f"UPDATE reminder_runs SET {', '.join(set_clauses)} WHERE id = ?"
                conn.execute(query, params)

        self.execute_with_retry(_update)

# ============================================================================
# CONTACT STATE STORE
# ============================================================================

class ContactAlreadySavedError(RuntimeError):
    """Raised when a contact is touched again after its state was saved this cycle"""


class ContactStateStore:
    """Loads and saves reminder state kept in a per-contact custom field.

    The field is labelled with the tracked group name. A save is the last
    operation allowed on a contact within a cycle; call ``begin_cycle`` at the
    start of every pass.
    """

    def __init__(self, db_manager: DatabaseManager, scheduler: ReminderScheduler,
                 clock: Callable[[], int] = current_time_ms):
        self.db_manager = db_manager
        self.scheduler = scheduler
        self.clock = clock
        self.label = scheduler.config.group
        self._saved: Set[int] = set()
        self.writes = 0

    def begin_cycle(self):
        self._saved.clear()
        self.writes = 0

    def _check_not_saved(self, contact: Contact):
        if contact.id in self._saved:
            raise ContactAlreadySavedError(
                f"Contact {contact.id} was already saved in this cycle; load it in the next cycle"
            )

    def load(self, contact: Contact, observed_last_contact: Optional[int] = None) -> ContactState:
        """Read the contact's state, defaulting anything absent or malformed"""
        self._check_not_saved(contact)

        raw = self.db_manager.get_custom_field(contact.id, self.label)
        if raw is None:
            logger.debug(f"No custom field '{self.label}' for contact {contact.id}")

        result = parse_state_blob(raw)
        state = ContactState.from_parse_result(
            result, self.scheduler, self.clock(), observed_last_contact
        )
        logger.debug(f"Loaded state for contact {contact.id}: {state.to_json()} dirty={state.dirty}")
        return state

    def save(self, contact: Contact, state: ContactState) -> bool:
        """Write the state if it changed; returns whether a write happened"""
        self._check_not_saved(contact)
        self._saved.add(contact.id)

        if not state.dirty:
            logger.debug(f"State for contact {contact.id} is not dirty. Nothing to do.")
            return False

        value = state.to_json()
        logger.debug(f"Setting state for contact {contact.id}: {value}")
        self.db_manager.set_custom_field(contact.id, self.label, value)
        state.dirty = False
        self.writes += 1
        return True

    def reset(self, contact: Contact):
        """Blank out the stored state so the next load starts from defaults"""
        self._check_not_saved(contact)
        self._saved.add(contact.id)
        self.db_manager.set_custom_field(contact.id, self.label, "{}")
        self.writes += 1
