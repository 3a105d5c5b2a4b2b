"""Persistence for sessions, questions, topics and attempts.

Two backends share the `Store` interface:

- `InMemoryStore`: process-local dicts; the default for dev and tests.
- `SqliteStore`: single-file SQLite database. Structured records are kept in
  typed columns for filtering plus a JSON blob holding the full pydantic
  model, so the record shape is governed by `models.py` rather than the
  table layout.

Both raise `DuplicateKeyError` when a session with an existing id is
inserted; the lifecycle controller relies on that to resolve concurrent
creation races.
"""

from __future__ import annotations

import abc
import itertools
import sqlite3
import threading
from typing import Dict, Iterable, List, Optional

from .errors import DuplicateKeyError
from .models import (
    AssessmentStatus,
    Attempt,
    Question,
    Topic,
    TrainingMode,
    TrainingSession,
)


class Store(abc.ABC):

    # ----- sessions -----
    @abc.abstractmethod
    def insert_session(self, session: TrainingSession) -> None:
        """Insert a new session; raise DuplicateKeyError if the id exists."""

    @abc.abstractmethod
    def save_session(self, session: TrainingSession) -> None:
        """Replace an existing session record."""

    @abc.abstractmethod
    def get_session(self, session_id: str) -> Optional[TrainingSession]:
        ...

    @abc.abstractmethod
    def latest_session(
        self,
        employee_id: str,
        scenario_id: str,
        mode: TrainingMode,
        exclude_id: Optional[str] = None,
    ) -> Optional[TrainingSession]:
        """Most recently started session for (employee, scenario, mode)."""

    @abc.abstractmethod
    def list_sessions(
        self,
        company_id: Optional[str] = None,
        mode: Optional[TrainingMode] = None,
        status: Optional[AssessmentStatus] = None,
    ) -> List[TrainingSession]:
        """Sessions ordered by start time ascending."""

    # ----- knowledge base -----
    @abc.abstractmethod
    def upsert_topic(self, topic: Topic) -> None:
        ...

    @abc.abstractmethod
    def list_topics(self, company_id: Optional[str] = None) -> List[Topic]:
        ...

    @abc.abstractmethod
    def upsert_question(self, question: Question) -> None:
        ...

    @abc.abstractmethod
    def get_question(self, question_id: str) -> Optional[Question]:
        ...

    @abc.abstractmethod
    def list_questions(self, topic_ids: Iterable[str], active_only: bool = True) -> List[Question]:
        """Questions of the given topics in insertion order."""

    # ----- attempts -----
    @abc.abstractmethod
    def record_attempt(self, attempt: Attempt) -> None:
        """Store `attempt` as the current one for its (employee, question) pair."""

    @abc.abstractmethod
    def latest_attempts(self, employee_id: str) -> Dict[str, Attempt]:
        """Current attempt per question id for an employee."""


class InMemoryStore(Store):
    def __init__(self) -> None:
        self._sessions: Dict[str, TrainingSession] = {}
        self._session_seq: Dict[str, int] = {}
        self._topics: Dict[str, Topic] = {}
        self._questions: Dict[str, Question] = {}
        self._attempts: Dict[tuple, Attempt] = {}
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def insert_session(self, session: TrainingSession) -> None:
        with self._lock:
            if session.id in self._sessions:
                raise DuplicateKeyError(session.id)
            self._sessions[session.id] = session.model_copy(deep=True)
            self._session_seq[session.id] = next(self._seq)

    def save_session(self, session: TrainingSession) -> None:
        with self._lock:
            if session.id not in self._session_seq:
                self._session_seq[session.id] = next(self._seq)
            self._sessions[session.id] = session.model_copy(deep=True)

    def get_session(self, session_id: str) -> Optional[TrainingSession]:
        s = self._sessions.get(session_id)
        return s.model_copy(deep=True) if s else None

    def _ordered_sessions(self) -> List[TrainingSession]:
        return sorted(
            self._sessions.values(),
            key=lambda s: (s.started_at, self._session_seq.get(s.id, 0)),
        )

    def latest_session(self, employee_id, scenario_id, mode, exclude_id=None):
        candidates = [
            s
            for s in self._ordered_sessions()
            if s.employee_id == employee_id
            and s.scenario_id == scenario_id
            and s.training_mode == mode
            and s.id != exclude_id
        ]
        return candidates[-1].model_copy(deep=True) if candidates else None

    def list_sessions(self, company_id=None, mode=None, status=None):
        out = []
        for s in self._ordered_sessions():
            if company_id is not None and s.company_id != company_id:
                continue
            if mode is not None and s.training_mode != mode:
                continue
            if status is not None and s.assessment_status != status:
                continue
            out.append(s.model_copy(deep=True))
        return out

    def upsert_topic(self, topic: Topic) -> None:
        self._topics[topic.id] = topic

    def list_topics(self, company_id=None):
        return [t for t in self._topics.values() if company_id is None or t.company_id == company_id]

    def upsert_question(self, question: Question) -> None:
        # dicts keep first insertion order even when a key is reassigned
        self._questions[question.id] = question

    def get_question(self, question_id):
        return self._questions.get(question_id)

    def list_questions(self, topic_ids, active_only=True):
        wanted = set(topic_ids)
        return [
            q
            for q in self._questions.values()
            if q.topic_id in wanted and (q.is_active or not active_only)
        ]

    def record_attempt(self, attempt: Attempt) -> None:
        key = (attempt.employee_id, attempt.question_id)
        with self._lock:
            current = self._attempts.get(key)
            if current is None or attempt.graded_at >= current.graded_at:
                self._attempts[key] = attempt

    def latest_attempts(self, employee_id):
        return {qid: a for (eid, qid), a in self._attempts.items() if eid == employee_id}


_SCHEMA = """
CREATE TABLE IF NOT EXISTS training_sessions (
    seq               INTEGER PRIMARY KEY AUTOINCREMENT,
    id                TEXT    UNIQUE NOT NULL,
    employee_id       TEXT    NOT NULL,
    company_id        TEXT    NOT NULL,
    scenario_id       TEXT,
    training_mode     TEXT    NOT NULL,
    assessment_status TEXT    NOT NULL,
    started_at        REAL    NOT NULL,
    data_json         TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sessions_gate
    ON training_sessions (employee_id, scenario_id, training_mode, started_at);
CREATE TABLE IF NOT EXISTS knowledge_topics (
    id          TEXT PRIMARY KEY,
    company_id  TEXT NOT NULL,
    data_json   TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS topic_questions (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    id          TEXT UNIQUE NOT NULL,
    topic_id    TEXT NOT NULL,
    is_active   INTEGER NOT NULL DEFAULT 1,
    data_json   TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS question_attempts (
    employee_id TEXT NOT NULL,
    question_id TEXT NOT NULL,
    graded_at   REAL NOT NULL,
    data_json   TEXT NOT NULL,
    PRIMARY KEY (employee_id, question_id)
);
"""


class SqliteStore(Store):
    """SQLite-backed store; the unique index on `id` surfaces duplicate inserts."""

    def __init__(self, path: str = ":memory:") -> None:
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        self._lock = threading.Lock()

    def close(self) -> None:
        self._conn.close()

    # ----- sessions -----
    @staticmethod
    def _session_row(session: TrainingSession) -> tuple:
        return (
            session.id,
            session.employee_id,
            session.company_id,
            session.scenario_id,
            session.training_mode.value,
            session.assessment_status.value,
            session.started_at.timestamp(),
            session.model_dump_json(by_alias=True),
        )

    def insert_session(self, session: TrainingSession) -> None:
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO training_sessions
                        (id, employee_id, company_id, scenario_id, training_mode,
                         assessment_status, started_at, data_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    self._session_row(session),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as e:
                self._conn.rollback()
                raise DuplicateKeyError(session.id) from e

    def save_session(self, session: TrainingSession) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO training_sessions
                    (id, employee_id, company_id, scenario_id, training_mode,
                     assessment_status, started_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    employee_id = excluded.employee_id,
                    company_id = excluded.company_id,
                    scenario_id = excluded.scenario_id,
                    training_mode = excluded.training_mode,
                    assessment_status = excluded.assessment_status,
                    started_at = excluded.started_at,
                    data_json = excluded.data_json
                """,
                self._session_row(session),
            )
            self._conn.commit()

    def get_session(self, session_id):
        row = self._conn.execute(
            "SELECT data_json FROM training_sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return TrainingSession.model_validate_json(row["data_json"]) if row else None

    def latest_session(self, employee_id, scenario_id, mode, exclude_id=None):
        row = self._conn.execute(
            """
            SELECT data_json FROM training_sessions
            WHERE employee_id = ? AND scenario_id = ? AND training_mode = ? AND id != ?
            ORDER BY started_at DESC, seq DESC
            LIMIT 1
            """,
            (employee_id, scenario_id, mode.value, exclude_id or ""),
        ).fetchone()
        return TrainingSession.model_validate_json(row["data_json"]) if row else None

    def list_sessions(self, company_id=None, mode=None, status=None):
        clauses, args = [], []
        if company_id is not None:
            clauses.append("company_id = ?")
            args.append(company_id)
        if mode is not None:
            clauses.append("training_mode = ?")
            args.append(mode.value)
        if status is not None:
            clauses.append("assessment_status = ?")
            args.append(status.value)
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        rows = self._conn.execute(
            f"SELECT data_json FROM training_sessions {where} ORDER BY started_at ASC, seq ASC",
            args,
        ).fetchall()
        return [TrainingSession.model_validate_json(r["data_json"]) for r in rows]

    # ----- knowledge base -----
    def upsert_topic(self, topic: Topic) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO knowledge_topics (id, company_id, data_json) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET company_id = excluded.company_id, data_json = excluded.data_json
                """,
                (topic.id, topic.company_id, topic.model_dump_json(by_alias=True)),
            )
            self._conn.commit()

    def list_topics(self, company_id=None):
        if company_id is None:
            rows = self._conn.execute("SELECT data_json FROM knowledge_topics").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT data_json FROM knowledge_topics WHERE company_id = ?", (company_id,)
            ).fetchall()
        return [Topic.model_validate_json(r["data_json"]) for r in rows]

    def upsert_question(self, question: Question) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO topic_questions (id, topic_id, is_active, data_json) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    topic_id = excluded.topic_id,
                    is_active = excluded.is_active,
                    data_json = excluded.data_json
                """,
                (
                    question.id,
                    question.topic_id,
                    1 if question.is_active else 0,
                    question.model_dump_json(by_alias=True),
                ),
            )
            self._conn.commit()

    def get_question(self, question_id):
        row = self._conn.execute(
            "SELECT data_json FROM topic_questions WHERE id = ?", (question_id,)
        ).fetchone()
        return Question.model_validate_json(row["data_json"]) if row else None

    def list_questions(self, topic_ids, active_only=True):
        ids = list(topic_ids)
        if not ids:
            return []
        marks = ", ".join("?" for _ in ids)
        sql = f"SELECT data_json FROM topic_questions WHERE topic_id IN ({marks})"
        if active_only:
            sql += " AND is_active = 1"
        sql += " ORDER BY seq ASC"
        rows = self._conn.execute(sql, ids).fetchall()
        return [Question.model_validate_json(r["data_json"]) for r in rows]

    # ----- attempts -----
    def record_attempt(self, attempt: Attempt) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO question_attempts (employee_id, question_id, graded_at, data_json)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(employee_id, question_id) DO UPDATE SET
                    graded_at = excluded.graded_at,
                    data_json = excluded.data_json
                WHERE excluded.graded_at >= question_attempts.graded_at
                """,
                (
                    attempt.employee_id,
                    attempt.question_id,
                    attempt.graded_at.timestamp(),
                    attempt.model_dump_json(by_alias=True),
                ),
            )
            self._conn.commit()

    def latest_attempts(self, employee_id):
        rows = self._conn.execute(
            "SELECT question_id, data_json FROM question_attempts WHERE employee_id = ?",
            (employee_id,),
        ).fetchall()
        return {r["question_id"]: Attempt.model_validate_json(r["data_json"]) for r in rows}


def build_store(backend: str = "memory", sqlite_path: str = ":memory:") -> Store:
    if backend == "sqlite":
        return SqliteStore(sqlite_path)
    return InMemoryStore()
