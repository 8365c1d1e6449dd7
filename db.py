from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any, Iterator
from urllib.parse import urlsplit

import psycopg2
import psycopg2.extras
import psycopg2.pool

from config import logger
from services.errors import InvalidPayload, PersistenceFailed


# Turn DATABASE_URL into the keyword arguments psycopg2.connect() expects
def _parse_pg_dsn(database_url: str) -> dict[str, Any]:
    url = database_url.strip()
    if url.startswith("postgresql+psycopg2://"):
        url = "postgresql://" + url[len("postgresql+psycopg2://") :]
    if not url.startswith("postgresql://"):
        raise RuntimeError(f"Unsupported DATABASE_URL scheme: {database_url!r}")

    u = urlsplit(url)
    if not u.hostname or not u.port or not u.path:
        raise RuntimeError(f"Invalid DATABASE_URL: {database_url!r}")
    return {
        "host": u.hostname,
        "port": u.port,
        "user": u.username,
        "password": u.password,
        "dbname": u.path.lstrip("/"),
    }


def _json_param(value: Any) -> psycopg2.extras.Json | None:
    if value is None:
        return None
    return psycopg2.extras.Json(value, dumps=lambda x: json.dumps(x, ensure_ascii=False))


class Database:
    """
    Explicit persistence handle: opened once at process start, closed at shutdown.

    Connections come from a thread-safe pool since Flask serves requests on threads.
    """

    def __init__(self, database_url: str, *, minconn: int = 1, maxconn: int = 10) -> None:
        self.database_url = database_url
        self.minconn = minconn
        self.maxconn = maxconn
        self._pool: psycopg2.pool.ThreadedConnectionPool | None = None

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    def open(self) -> "Database":
        if self._pool is not None:
            return self
        dsn = _parse_pg_dsn(self.database_url)
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(self.minconn, self.maxconn, **dsn)
        except psycopg2.Error as e:
            raise RuntimeError(
                f"Database connection failed. Please check DATABASE_URL and PostgreSQL status. Details: {type(e).__name__}({e})"
            ) from e
        logger.info("DB pool opened (%s:%s/%s)", dsn["host"], dsn["port"], dsn["dbname"])
        return self

    def close(self) -> None:
        if self._pool is None:
            return
        self._pool.closeall()
        self._pool = None
        logger.info("DB pool closed")

    # Commit on success, roll back and re-raise on error, always hand the connection back
    @contextmanager
    def conn_scope(self) -> Iterator[psycopg2.extensions.connection]:
        if self._pool is None:
            raise RuntimeError("Database is not open")
        conn = self._pool.getconn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)


SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS exam_submissions (
  id SERIAL PRIMARY KEY,
  examinee_name TEXT NOT NULL,
  examinee_id TEXT NOT NULL,
  exam_type TEXT NOT NULL CHECK (exam_type IN ('reading', 'listening', 'writing')),
  exam_id INT NOT NULL DEFAULT 0,
  exam_title TEXT NOT NULL,
  answers JSONB NULL,
  pdf_filename TEXT NOT NULL,
  pdf_path TEXT NOT NULL,
  time_spent INT NULL,
  status TEXT NOT NULL DEFAULT 'submitted' CHECK (status IN ('pending', 'submitted')),
  created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
  submitted_at TIMESTAMPTZ NULL
);
CREATE INDEX IF NOT EXISTS idx_exam_submissions_examinee_id ON exam_submissions(examinee_id);
CREATE INDEX IF NOT EXISTS idx_exam_submissions_submitted_at ON exam_submissions(submitted_at);
CREATE INDEX IF NOT EXISTS idx_exam_submissions_status ON exam_submissions(status);

CREATE TABLE IF NOT EXISTS reading_questions (
  id SERIAL PRIMARY KEY,
  title TEXT NOT NULL,
  passage TEXT NOT NULL DEFAULT '',
  questions JSONB NOT NULL,
  created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS listening_questions (
  id SERIAL PRIMARY KEY,
  title TEXT NOT NULL,
  audio_url TEXT NOT NULL,
  text TEXT NOT NULL DEFAULT '',
  questions JSONB NOT NULL,
  created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS writing_questions (
  id SERIAL PRIMARY KEY,
  title TEXT NOT NULL,
  prompt TEXT NOT NULL,
  instructions TEXT NOT NULL DEFAULT '',
  word_limit INT NOT NULL DEFAULT 500,
  image_url TEXT NULL,
  created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def init_db(database: Database) -> None:
    """Create required tables and indexes. Safe to run on every start."""
    try:
        with database.conn_scope() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_DDL)
        logger.info("DB ready")
    except psycopg2.Error as e:
        raise RuntimeError(
            f"Database initialisation failed. Details: {type(e).__name__}({e})"
        ) from e


class _Repository:
    def __init__(self, database: Database) -> None:
        self.database = database

    # Driver errors surface as a single generic storage failure
    @contextmanager
    def _scope(self) -> Iterator[psycopg2.extensions.connection]:
        try:
            with self.database.conn_scope() as conn:
                yield conn
        except psycopg2.Error as e:
            logger.exception("Database operation failed")
            raise PersistenceFailed() from e


_SUBMISSION_COLUMNS = """
   id, examinee_name, examinee_id, exam_type, exam_id, exam_title, answers,
   pdf_filename, pdf_path, time_spent, status, created_at, submitted_at
"""

_SUBMISSION_REQUIRED = ("exam_type", "examinee_name", "examinee_id", "pdf_path")


class SubmissionRepository(_Repository):
    """CRUD over `exam_submissions`. Listings only include committed rows."""

    def insert_submission(self, fields: dict[str, Any], *, status: str = "submitted") -> int:
        missing = [k for k in _SUBMISSION_REQUIRED if not str(fields.get(k) or "").strip()]
        if missing:
            raise InvalidPayload("Missing required fields: " + ", ".join(missing))
        if status not in {"pending", "submitted"}:
            raise ValueError(f"Unknown submission status: {status!r}")
        sql = """
 INSERT INTO exam_submissions(
   examinee_name, examinee_id, exam_type, exam_id, exam_title, answers,
   pdf_filename, pdf_path, time_spent, status, submitted_at
 )
 VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, CASE WHEN %s = 'submitted' THEN NOW() END)
 RETURNING id
 """
        exam_type = str(fields["exam_type"])
        pdf_path = str(fields["pdf_path"])
        params = (
            str(fields["examinee_name"]),
            str(fields["examinee_id"]),
            exam_type,
            int(fields.get("exam_id") or 0),
            str(fields.get("exam_title") or f"{exam_type}_exam"),
            _json_param(fields.get("answers")),
            str(fields.get("pdf_filename") or pdf_path.rsplit("/", 1)[-1]),
            pdf_path,
            (int(fields["time_spent"]) if fields.get("time_spent") is not None else None),
            status,
            status,
        )
        with self._scope() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return int(cur.fetchone()[0])

    def mark_submitted(self, submission_id: int) -> bool:
        sql = """
 UPDATE exam_submissions
    SET status='submitted', submitted_at=NOW()
  WHERE id=%s AND status='pending'
 """
        with self._scope() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (int(submission_id),))
                return (cur.rowcount or 0) > 0

    def update_pending_path(self, submission_id: int, pdf_filename: str, pdf_path: str) -> bool:
        sql = """
 UPDATE exam_submissions
    SET pdf_filename=%s, pdf_path=%s
  WHERE id=%s AND status='pending'
 """
        with self._scope() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (pdf_filename, pdf_path, int(submission_id)))
                return (cur.rowcount or 0) > 0

    def get_submission_by_id(self, submission_id: int) -> dict[str, Any] | None:
        sql = f"SELECT {_SUBMISSION_COLUMNS} FROM exam_submissions WHERE id=%s"
        with self._scope() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(sql, (int(submission_id),))
                row = cur.fetchone()
                return dict(row) if row else None

    def list_submissions(self) -> list[dict[str, Any]]:
        sql = f"""
 SELECT {_SUBMISSION_COLUMNS}
   FROM exam_submissions
  WHERE status='submitted'
  ORDER BY submitted_at DESC, id DESC
 """
        with self._scope() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(sql)
                return [dict(r) for r in cur.fetchall()]

    def list_submissions_by_examinee(self, examinee_id: str) -> list[dict[str, Any]]:
        sql = f"""
 SELECT {_SUBMISSION_COLUMNS}
   FROM exam_submissions
  WHERE status='submitted' AND examinee_id=%s
  ORDER BY submitted_at DESC, id DESC
 """
        with self._scope() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(sql, (str(examinee_id),))
                return [dict(r) for r in cur.fetchall()]

    def list_stale_pending(self, older_than_seconds: int) -> list[dict[str, Any]]:
        sql = f"""
 SELECT {_SUBMISSION_COLUMNS}
   FROM exam_submissions
  WHERE status='pending' AND created_at < NOW() - (%s * INTERVAL '1 second')
  ORDER BY id
 """
        with self._scope() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(sql, (max(0, int(older_than_seconds)),))
                return [dict(r) for r in cur.fetchall()]

    def get_examinee_name(self, examinee_id: str) -> str | None:
        sql = """
 SELECT examinee_name
   FROM exam_submissions
  WHERE examinee_id=%s
  ORDER BY id DESC
  LIMIT 1
 """
        with self._scope() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (str(examinee_id),))
                row = cur.fetchone()
                return str(row[0]) if row else None

    def delete_submission_by_id(self, submission_id: int) -> bool:
        with self._scope() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM exam_submissions WHERE id=%s", (int(submission_id),))
                return (cur.rowcount or 0) > 0

    def delete_submissions_by_examinee(self, examinee_id: str) -> int:
        with self._scope() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM exam_submissions WHERE examinee_id=%s", (str(examinee_id),))
                return int(cur.rowcount or 0)

    def delete_all_submissions(self) -> int:
        with self._scope() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM exam_submissions")
                return int(cur.rowcount or 0)


# table, editable columns, required columns, JSON columns
_QUESTION_TABLES: dict[str, tuple[str, tuple[str, ...], tuple[str, ...], frozenset[str]]] = {
    "reading": (
        "reading_questions",
        ("title", "passage", "questions"),
        ("title", "questions"),
        frozenset({"questions"}),
    ),
    "listening": (
        "listening_questions",
        ("title", "audio_url", "text", "questions"),
        ("title", "audio_url", "questions"),
        frozenset({"questions"}),
    ),
    "writing": (
        "writing_questions",
        ("title", "prompt", "instructions", "word_limit", "image_url"),
        ("title", "prompt"),
        frozenset(),
    ),
}


def _question_table(exam_type: str) -> tuple[str, tuple[str, ...], tuple[str, ...], frozenset[str]]:
    try:
        return _QUESTION_TABLES[str(exam_type or "")]
    except KeyError:
        raise InvalidPayload(f"Unknown exam type: {exam_type!r}") from None


def normalize_question_fields(exam_type: str, data: dict[str, Any]) -> dict[str, Any]:
    """
    Pick the editable columns of a question set from a request body.

    `questions` may arrive as a JSON string (older clients) or as a list.
    """
    _, columns, required, json_cols = _question_table(exam_type)
    out: dict[str, Any] = {}
    for col in columns:
        if col not in data:
            continue
        v = data.get(col)
        if col in json_cols and isinstance(v, str):
            try:
                v = json.loads(v)
            except ValueError:
                raise InvalidPayload(f"{col} must be valid JSON") from None
        if col == "word_limit" and v is not None:
            try:
                v = int(v)
            except (TypeError, ValueError):
                raise InvalidPayload("word_limit must be an integer") from None
        out[col] = v
    missing = [c for c in required if not out.get(c)]
    if missing:
        raise InvalidPayload("Missing required fields: " + ", ".join(missing))
    return out


class QuestionRepository(_Repository):
    """Question banks, one table per exam type."""

    def list_questions(self, exam_type: str) -> list[dict[str, Any]]:
        table, _, _, _ = _question_table(exam_type)
        with self._scope() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(f"SELECT * FROM {table} ORDER BY created_at DESC, id DESC")
                return [dict(r) for r in cur.fetchall()]

    def get_question(self, exam_type: str, question_id: int) -> dict[str, Any] | None:
        table, _, _, _ = _question_table(exam_type)
        with self._scope() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(f"SELECT * FROM {table} WHERE id=%s", (int(question_id),))
                row = cur.fetchone()
                return dict(row) if row else None

    def create_question(self, exam_type: str, fields: dict[str, Any]) -> int:
        table, _, _, json_cols = _question_table(exam_type)
        cols = list(fields)
        params = [(_json_param(fields[c]) if c in json_cols else fields[c]) for c in cols]
        placeholders = ", ".join(["%s"] * len(cols))
        sql = f"INSERT INTO {table}({', '.join(cols)}) VALUES ({placeholders}) RETURNING id"
        with self._scope() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                return int(cur.fetchone()[0])

    def update_question(self, exam_type: str, question_id: int, fields: dict[str, Any]) -> bool:
        table, _, _, json_cols = _question_table(exam_type)
        cols = list(fields)
        if not cols:
            return False
        assignments = ", ".join(f"{c}=%s" for c in cols)
        params = [(_json_param(fields[c]) if c in json_cols else fields[c]) for c in cols]
        params.append(int(question_id))
        with self._scope() as conn:
            with conn.cursor() as cur:
                cur.execute(f"UPDATE {table} SET {assignments} WHERE id=%s", tuple(params))
                return (cur.rowcount or 0) > 0

    def delete_question(self, exam_type: str, question_id: int) -> bool:
        table, _, _, _ = _question_table(exam_type)
        with self._scope() as conn:
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {table} WHERE id=%s", (int(question_id),))
                return (cur.rowcount or 0) > 0
