"""
Gov Voter Database - SQLite ledger of governance proposals seen per chain.

One row per (chain_id, proposal_id). Rows are inserted once, mutated only by
alert message-id assignment, vote recording and reminder clock advance, and
never deleted.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from bots.gov_voter.errors import StoreIntegrityError
from bots.gov_voter.utils import from_db_time, to_db_time, utc_now

logger = logging.getLogger(__name__)

# Telegram message ids are positive; these mark "no alert yet" and "alert send failed"
MESSAGE_ID_UNSET = 0
MESSAGE_ID_SEND_FAILED = -1

REMINDER_INTERVAL = timedelta(hours=6)

VOTE_OPTIONS = ("yes", "no", "veto", "abstain")


def make_uid(chain_id: str, proposal_id: str) -> str:
    return f"{chain_id}_{proposal_id}"


@dataclass
class ProposalRecord:
    """A governance proposal tracked for one chain."""
    chain_id: str
    proposal_id: str
    voting_start_time: datetime
    voting_end_time: datetime
    voted: bool = False
    voted_by: str = ""
    vote_option: str = ""
    created_at: Optional[datetime] = None
    last_checked: Optional[datetime] = None
    message_id: int = MESSAGE_ID_UNSET

    @property
    def uid(self) -> str:
        return make_uid(self.chain_id, self.proposal_id)


@dataclass
class LookupResult:
    """Decision input for the monitor: does the record exist, is it voted, where is its alert."""
    exists: bool
    voted: bool = False
    message_id: int = MESSAGE_ID_UNSET

    @property
    def has_valid_message(self) -> bool:
        return self.message_id > 0


class ProposalStore:
    """SQLite store for proposal lifecycle state."""

    # Store calls run on the event loop thread; the lock only matters when one
    # store is shared across threads, and keeps their connections serialized
    _lock = threading.Lock()

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS proposals (
                    uid TEXT PRIMARY KEY,
                    chain_id TEXT NOT NULL,
                    proposal_id TEXT NOT NULL,
                    voting_start_time TEXT NOT NULL,
                    voting_end_time TEXT NOT NULL,
                    voted INTEGER NOT NULL DEFAULT 0,
                    voted_by TEXT NOT NULL DEFAULT '',
                    vote_option TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    last_checked TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    message_id INTEGER NOT NULL DEFAULT 0
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_proposals_chain ON proposals(chain_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_proposals_voted ON proposals(voted)")
            conn.commit()
            logger.info(f"Database initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Get database connection with context manager."""
        with self._lock:
            conn = sqlite3.connect(self.db_path, timeout=30)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            except sqlite3.IntegrityError as e:
                raise StoreIntegrityError(f"Constraint violated in proposal store: {e}") from e
            except sqlite3.OperationalError:
                raise
            except sqlite3.DatabaseError as e:
                # "file is not a database", "database disk image is malformed"
                raise StoreIntegrityError(f"Proposal store {self.db_path} is corrupt: {e}") from e
            finally:
                conn.close()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ProposalRecord:
        try:
            return ProposalRecord(
                chain_id=row["chain_id"],
                proposal_id=row["proposal_id"],
                voting_start_time=from_db_time(row["voting_start_time"]),
                voting_end_time=from_db_time(row["voting_end_time"]),
                voted=bool(row["voted"]),
                voted_by=row["voted_by"] or "",
                vote_option=row["vote_option"] or "",
                created_at=from_db_time(row["created_at"]),
                last_checked=from_db_time(row["last_checked"]),
                message_id=int(row["message_id"]),
            )
        except (TypeError, ValueError) as e:
            raise StoreIntegrityError(f"Malformed proposal row {row['uid']}: {e}") from e

    # === WRITES ===

    def upsert_if_absent(self, record: ProposalRecord, now: Optional[datetime] = None) -> bool:
        """Insert the record unless its uid exists. Returns True when a row was inserted."""
        now_text = to_db_time(now or utc_now())
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT OR IGNORE INTO proposals
                (uid, chain_id, proposal_id, voting_start_time, voting_end_time,
                 voted, voted_by, vote_option, created_at, last_checked, message_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.uid, record.chain_id, record.proposal_id,
                to_db_time(record.voting_start_time), to_db_time(record.voting_end_time),
                1 if record.voted else 0, record.voted_by, record.vote_option,
                now_text, now_text, record.message_id,
            ))
            conn.commit()
            inserted = cursor.rowcount == 1

        if inserted:
            logger.info(f"Recorded new proposal {record.uid} (voted={record.voted})")
        return inserted

    def set_message_id(self, chain_id: str, proposal_id: str, message_id: int) -> None:
        """Attach the alert message id, or MESSAGE_ID_SEND_FAILED after a failed send."""
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE proposals SET message_id = ? WHERE uid = ?",
                (int(message_id), make_uid(chain_id, proposal_id)),
            )
            conn.commit()

    def record_vote(self, chain_id: str, proposal_id: str, vote_option: str, voted_by: str) -> None:
        """Mark the proposal voted. Last writer wins."""
        if vote_option not in VOTE_OPTIONS:
            raise ValueError(f"Unknown vote option: {vote_option}")
        uid = make_uid(chain_id, proposal_id)
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE proposals SET voted = 1, vote_option = ?, voted_by = ? WHERE uid = ?",
                (vote_option, voted_by, uid),
            )
            conn.commit()
            if cursor.rowcount == 0:
                logger.warning(f"record_vote: no proposal {uid} in store")
            else:
                logger.info(f"Recorded vote {vote_option} on {uid} by {voted_by}")

    def reminder_due(self, chain_id: str, proposal_id: str, now: Optional[datetime] = None) -> bool:
        """
        Check-and-advance the reminder clock.

        True iff the proposal is unvoted, its voting period is still open and
        at least REMINDER_INTERVAL passed since last_checked. When True,
        last_checked is moved to ``now`` by the same UPDATE, so concurrent
        callers see at most one True per window.
        """
        now = now or utc_now()
        now_text = to_db_time(now)
        threshold = to_db_time(now - REMINDER_INTERVAL)
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                UPDATE proposals
                SET last_checked = ?
                WHERE uid = ?
                  AND voted = 0
                  AND last_checked <= ?
                  AND voting_end_time > ?
            """, (now_text, make_uid(chain_id, proposal_id), threshold, now_text))
            conn.commit()
            return cursor.rowcount == 1

    def rewind_reminder(self, chain_id: str, proposal_id: str, now: Optional[datetime] = None) -> None:
        """Make the reminder due again at ``now`` after a reminder could not be delivered."""
        now = now or utc_now()
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE proposals SET last_checked = ? WHERE uid = ? AND voted = 0",
                (to_db_time(now - REMINDER_INTERVAL), make_uid(chain_id, proposal_id)),
            )
            conn.commit()

    # === READS ===

    def lookup(self, chain_id: str, proposal_id: str) -> LookupResult:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT voted, message_id FROM proposals WHERE uid = ?",
                (make_uid(chain_id, proposal_id),),
            )
            row = cursor.fetchone()
        if row is None:
            return LookupResult(exists=False)
        try:
            return LookupResult(exists=True, voted=bool(row["voted"]), message_id=int(row["message_id"]))
        except (TypeError, ValueError) as e:
            raise StoreIntegrityError(f"Malformed proposal row {make_uid(chain_id, proposal_id)}: {e}") from e

    def get(self, chain_id: str, proposal_id: str) -> Optional[ProposalRecord]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM proposals WHERE uid = ?", (make_uid(chain_id, proposal_id),))
            row = cursor.fetchone()
        return self._row_to_record(row) if row else None

    def list_records(self, chain_id: Optional[str] = None, voted: Optional[bool] = None) -> List[ProposalRecord]:
        """All records, optionally filtered by chain and voted flag, newest first."""
        query = "SELECT * FROM proposals WHERE 1 = 1"
        params: list = []
        if chain_id is not None:
            query += " AND chain_id = ?"
            params.append(chain_id)
        if voted is not None:
            query += " AND voted = ?"
            params.append(1 if voted else 0)
        query += " ORDER BY created_at DESC, CAST(proposal_id AS INTEGER) DESC"

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [self._row_to_record(row) for row in rows]
