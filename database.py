"""
database.py — SQLite database setup, queries, and helpers.
SQLite is the single source of truth for postings, identified companies,
search-term scheduling state and run history.

Every sqlite3 error is re-raised as StorageFailure so the orchestrator can
abort the run instead of guessing what was persisted.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, Optional

from config import DB_PATH, STORAGE
from errors import StorageFailure, ValidationError
from models import (
    IdentifiedCompany, JobPosting, RunSummary, SearchTermState,
    TOOL_BOTH, TOOL_OUTREACH, TOOL_SALESLOFT,
    from_iso, normalize_company, to_iso, utc_now,
)

# SQLite's default host-parameter limit is 999; stay well under it.
ID_CHUNK_SIZE = 500


def get_connection() -> sqlite3.Connection:
    """Get a database connection, creating the DB file if needed."""
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH), timeout=float(STORAGE.get("timeout_seconds", 10)))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


@contextmanager
def _connection() -> Iterator[sqlite3.Connection]:
    """Open a connection, commit on success, roll back and wrap errors on failure."""
    try:
        conn = get_connection()
    except (sqlite3.Error, OSError) as e:
        raise StorageFailure(f"Cannot open database at {DB_PATH}: {e}") from e
    try:
        yield conn
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise StorageFailure(f"Database operation failed: {e}") from e
    finally:
        conn.close()


def init_db():
    """Create all tables if they don't exist."""
    with _connection() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS job_postings (
                job_id TEXT PRIMARY KEY,
                platform TEXT NOT NULL DEFAULT 'LinkedIn',
                company TEXT NOT NULL,
                job_title TEXT,
                location TEXT,
                description TEXT,
                job_url TEXT,
                search_term TEXT,
                scraped_at TEXT,
                processed INTEGER NOT NULL DEFAULT 0,
                processed_at TEXT,
                analysis_attempts INTEGER NOT NULL DEFAULT 0,
                last_analysis_error TEXT
            );

            CREATE TABLE IF NOT EXISTS identified_companies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                company_name TEXT NOT NULL,
                normalized_name TEXT NOT NULL,
                tool_detected TEXT NOT NULL
                    CHECK (tool_detected IN ('Outreach.io', 'SalesLoft', 'Both')),
                signal_type TEXT NOT NULL
                    CHECK (signal_type IN ('required', 'preferred', 'stack_mention', 'none')),
                context TEXT,
                job_title TEXT,
                job_url TEXT,
                platform TEXT DEFAULT 'LinkedIn',
                identified_at TEXT NOT NULL,
                UNIQUE (normalized_name, tool_detected)
            );

            CREATE TABLE IF NOT EXISTS search_terms (
                search_term TEXT PRIMARY KEY,
                last_scraped_at TEXT,
                jobs_found_count INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                total_jobs_analyzed INTEGER NOT NULL DEFAULT 0,
                total_companies_found INTEGER NOT NULL DEFAULT 0,
                last_error TEXT
            );

            CREATE TABLE IF NOT EXISTS run_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_at TEXT,
                terms_processed INTEGER DEFAULT 0,
                postings_fetched INTEGER DEFAULT 0,
                postings_new INTEGER DEFAULT 0,
                postings_analyzed INTEGER DEFAULT 0,
                postings_skipped INTEGER DEFAULT 0,
                postings_pending INTEGER DEFAULT 0,
                companies_identified INTEGER DEFAULT 0,
                errors TEXT,
                cancelled INTEGER DEFAULT 0,
                duration_seconds REAL
            );

            CREATE INDEX IF NOT EXISTS idx_postings_processed ON job_postings(processed);
            CREATE INDEX IF NOT EXISTS idx_companies_normalized ON identified_companies(normalized_name);
            CREATE INDEX IF NOT EXISTS idx_terms_last_scraped ON search_terms(last_scraped_at);
        """)


# --- Job Postings ---

def _row_to_posting(row: sqlite3.Row) -> JobPosting:
    return JobPosting(
        job_id=row["job_id"],
        platform=row["platform"],
        company=row["company"],
        job_title=row["job_title"] or "",
        location=row["location"],
        description=row["description"] or "",
        job_url=row["job_url"] or "",
        search_term=row["search_term"] or "",
        scraped_at=row["scraped_at"],
        processed=bool(row["processed"]),
        processed_at=row["processed_at"],
    )


def insert_postings(postings: Iterable[JobPosting]) -> int:
    """Store postings, ignoring job_ids already present. Returns count of inserted rows."""
    rows = [
        (
            p.job_id, p.platform, p.company, p.job_title, p.location,
            p.description, p.job_url, p.search_term, p.scraped_at,
        )
        for p in postings
    ]
    if not rows:
        return 0
    with _connection() as conn:
        before = conn.total_changes
        conn.executemany(
            """INSERT OR IGNORE INTO job_postings
               (job_id, platform, company, job_title, location, description,
                job_url, search_term, scraped_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            rows,
        )
        return conn.total_changes - before


def existing_job_ids(job_ids: Iterable[str]) -> set[str]:
    """Return the subset of job_ids already stored. One query per chunk, not per id."""
    ids = list(dict.fromkeys(job_ids))
    found: set[str] = set()
    if not ids:
        return found
    with _connection() as conn:
        for start in range(0, len(ids), ID_CHUNK_SIZE):
            chunk = ids[start:start + ID_CHUNK_SIZE]
            placeholders = ",".join("?" * len(chunk))
            rows = conn.execute(
                f"SELECT job_id FROM job_postings WHERE job_id IN ({placeholders})",
                chunk,
            ).fetchall()
            found.update(row["job_id"] for row in rows)
    return found


def get_posting(job_id: str) -> Optional[JobPosting]:
    with _connection() as conn:
        row = conn.execute("SELECT * FROM job_postings WHERE job_id = ?", (job_id,)).fetchone()
    return _row_to_posting(row) if row else None


def get_analysis_attempts(job_id: str) -> int:
    with _connection() as conn:
        row = conn.execute(
            "SELECT analysis_attempts FROM job_postings WHERE job_id = ?", (job_id,)
        ).fetchone()
    return row["analysis_attempts"] if row else 0


def _mark_processed(conn: sqlite3.Connection, job_id: str):
    conn.execute(
        """UPDATE job_postings
           SET processed = 1, processed_at = ?, last_analysis_error = NULL
           WHERE job_id = ?""",
        (to_iso(utc_now()), job_id),
    )


def mark_processed(job_id: str):
    """Flag a posting as processed. Only called after a valid verdict or a known-company skip."""
    with _connection() as conn:
        _mark_processed(conn, job_id)


def record_analysis_error(job_id: str, message: str):
    """Count a failed analysis attempt. The posting stays unprocessed."""
    with _connection() as conn:
        conn.execute(
            """UPDATE job_postings
               SET analysis_attempts = analysis_attempts + 1, last_analysis_error = ?
               WHERE job_id = ?""",
            (message[:500], job_id),
        )


def get_unprocessed_postings(limit: int = 100, max_attempts: Optional[int] = None) -> list[JobPosting]:
    """Unprocessed postings, oldest first, skipping ones that exhausted their attempts."""
    query = "SELECT * FROM job_postings WHERE processed = 0"
    params: list = []
    if max_attempts is not None:
        query += " AND analysis_attempts < ?"
        params.append(max_attempts)
    query += " ORDER BY scraped_at ASC, rowid ASC LIMIT ?"
    params.append(limit)
    with _connection() as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_posting(row) for row in rows]


# --- Identified Companies ---

def _upsert_identified_company(conn: sqlite3.Connection, company: IdentifiedCompany) -> bool:
    if company.tool_detected not in (TOOL_OUTREACH, TOOL_SALESLOFT, TOOL_BOTH):
        raise ValidationError(f"Cannot record {company.company_name!r} with tool {company.tool_detected!r}")
    cursor = conn.execute(
        """INSERT OR IGNORE INTO identified_companies
           (company_name, normalized_name, tool_detected, signal_type, context,
            job_title, job_url, platform, identified_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            company.company_name, normalize_company(company.company_name),
            company.tool_detected, company.signal_type, company.context,
            company.job_title, company.job_url, company.platform, company.identified_at,
        ),
    )
    if cursor.rowcount == 1:
        return True

    # Existing (company, tool) pair: only fill display fields that are still empty
    conn.execute(
        """UPDATE identified_companies
           SET context = COALESCE(NULLIF(context, ''), ?),
               job_title = COALESCE(NULLIF(job_title, ''), ?),
               job_url = COALESCE(NULLIF(job_url, ''), ?)
           WHERE normalized_name = ? AND tool_detected = ?""",
        (
            company.context, company.job_title, company.job_url,
            normalize_company(company.company_name), company.tool_detected,
        ),
    )
    return False


def upsert_identified_company(company: IdentifiedCompany) -> bool:
    """Insert a (company, tool) pair if absent. Returns True when a new row was created."""
    with _connection() as conn:
        return _upsert_identified_company(conn, company)


def record_identification(job_id: str, company: IdentifiedCompany) -> bool:
    """Upsert the identified company and mark the posting processed in one transaction."""
    with _connection() as conn:
        created = _upsert_identified_company(conn, company)
        _mark_processed(conn, job_id)
        return created


def is_company_identified(company_name: str) -> bool:
    with _connection() as conn:
        row = conn.execute(
            "SELECT 1 FROM identified_companies WHERE normalized_name = ? LIMIT 1",
            (normalize_company(company_name),),
        ).fetchone()
    return row is not None


def identified_company_names() -> set[str]:
    """Normalized names of every identified company, regardless of tool."""
    with _connection() as conn:
        rows = conn.execute("SELECT DISTINCT normalized_name FROM identified_companies").fetchall()
    return {row["normalized_name"] for row in rows}


def get_identified_companies() -> list[IdentifiedCompany]:
    with _connection() as conn:
        rows = conn.execute(
            "SELECT * FROM identified_companies ORDER BY identified_at ASC, id ASC"
        ).fetchall()
    return [
        IdentifiedCompany(
            company_name=row["company_name"],
            tool_detected=row["tool_detected"],
            signal_type=row["signal_type"],
            context=row["context"] or "",
            job_title=row["job_title"],
            job_url=row["job_url"],
            platform=row["platform"],
            identified_at=row["identified_at"],
        )
        for row in rows
    ]


# --- Search Terms ---

def _row_to_term(row: sqlite3.Row) -> SearchTermState:
    return SearchTermState(
        search_term=row["search_term"],
        last_scraped_at=from_iso(row["last_scraped_at"]),
        jobs_found_count=row["jobs_found_count"],
        is_active=bool(row["is_active"]),
        total_jobs_analyzed=row["total_jobs_analyzed"],
        total_companies_found=row["total_companies_found"],
        last_error=row["last_error"],
    )


def seed_search_terms(terms: Iterable[str]) -> int:
    """Insert configured terms. Existing scheduling state is never reset."""
    with _connection() as conn:
        before = conn.total_changes
        conn.executemany(
            "INSERT OR IGNORE INTO search_terms (search_term) VALUES (?)",
            [(t,) for t in terms],
        )
        return conn.total_changes - before


def get_search_term(term: str) -> Optional[SearchTermState]:
    with _connection() as conn:
        row = conn.execute("SELECT * FROM search_terms WHERE search_term = ?", (term,)).fetchone()
    return _row_to_term(row) if row else None


def ensure_search_term(term: str) -> SearchTermState:
    with _connection() as conn:
        conn.execute("INSERT OR IGNORE INTO search_terms (search_term) VALUES (?)", (term,))
        row = conn.execute("SELECT * FROM search_terms WHERE search_term = ?", (term,)).fetchone()
    return _row_to_term(row)


def set_term_active(term: str, is_active: bool):
    with _connection() as conn:
        conn.execute(
            "UPDATE search_terms SET is_active = ? WHERE search_term = ?",
            (int(is_active), term),
        )


def list_due_terms(cutoff: datetime) -> list[SearchTermState]:
    """Active terms never scraped or scraped before cutoff, oldest first (nulls first)."""
    with _connection() as conn:
        rows = conn.execute(
            """SELECT * FROM search_terms
               WHERE is_active = 1
                 AND (last_scraped_at IS NULL OR last_scraped_at < ?)
               ORDER BY last_scraped_at IS NOT NULL, last_scraped_at ASC, search_term ASC""",
            (to_iso(cutoff),),
        ).fetchall()
    return [_row_to_term(row) for row in rows]


def update_term(
    term: str,
    last_scraped_at: datetime,
    jobs_found_count: int,
    last_error: Optional[str] = None,
    jobs_analyzed: int = 0,
    companies_found: int = 0,
):
    with _connection() as conn:
        conn.execute("INSERT OR IGNORE INTO search_terms (search_term) VALUES (?)", (term,))
        conn.execute(
            """UPDATE search_terms
               SET last_scraped_at = ?,
                   jobs_found_count = ?,
                   last_error = ?,
                   total_jobs_analyzed = total_jobs_analyzed + ?,
                   total_companies_found = total_companies_found + ?
               WHERE search_term = ?""",
            (to_iso(last_scraped_at), jobs_found_count, last_error, jobs_analyzed, companies_found, term),
        )


# --- Run Log ---

def log_run(summary: RunSummary):
    """Store a run log entry."""
    with _connection() as conn:
        conn.execute(
            """INSERT INTO run_log
               (started_at, terms_processed, postings_fetched, postings_new,
                postings_analyzed, postings_skipped, postings_pending,
                companies_identified, errors, cancelled, duration_seconds)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                summary.started_at, summary.terms_processed, summary.postings_fetched,
                summary.postings_new, summary.postings_analyzed,
                summary.postings_skipped_known_company, summary.postings_pending,
                summary.companies_identified,
                json.dumps({"counts": summary.errors, "messages": summary.error_messages}),
                int(summary.cancelled), summary.duration_seconds,
            ),
        )


def get_last_run() -> Optional[dict]:
    """Get the most recent run log entry."""
    with _connection() as conn:
        row = conn.execute("SELECT * FROM run_log ORDER BY id DESC LIMIT 1").fetchone()
    if not row:
        return None
    result = dict(row)
    result["errors"] = json.loads(result["errors"]) if result["errors"] else {}
    return result
