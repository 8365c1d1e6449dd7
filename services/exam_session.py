from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from config import logger
from services.errors import AlreadySubmitted, InvalidPayload, NotFound
from services.exam_timer import EXPIRED, ExamTimer, SubmitGuard
from services.pdf_assembler import assemble_exam_pdf
from services.submission_service import SubmissionResult, SubmissionService
from storage.layout import StorageLayout, validate_exam_type, validate_examinee

# How long a finished session stays queryable before tick_all drops it.
FINISHED_TTL_SECONDS = 3600
# How long a losing submit call waits for the winning one to finish.
FINALIZE_WAIT_SECONDS = 60


@dataclass
class ExamSession:
    token: str
    exam_type: str
    exam: dict[str, Any]
    examinee_name: str
    examinee_id: str
    timer: ExamTimer
    started_at: datetime
    guard: SubmitGuard = field(default_factory=SubmitGuard)
    answers: dict[str, Any] = field(default_factory=dict)
    result: SubmissionResult | None = None
    error: str | None = None
    finished_at: float | None = None
    done: threading.Event = field(default_factory=threading.Event)
    attempt_lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def finalized(self) -> bool:
        return self.result is not None

    def snapshot(self) -> dict[str, Any]:
        t = self.timer
        out: dict[str, Any] = {
            "token": self.token,
            "examType": self.exam_type,
            "examId": self.exam.get("id"),
            "examTitle": self.exam.get("title"),
            "examineeName": self.examinee_name,
            "examineeId": self.examinee_id,
            "state": t.state,
            "remainingSeconds": t.remaining_seconds,
            "remaining": t.format_remaining(),
            "warning": t.warning,
            "durationSeconds": t.duration_seconds,
            "startedAt": self.started_at.isoformat(),
            "answers": self.answers,
            "error": self.error,
        }
        if self.result is not None:
            out["submission"] = self.result.to_json()
        return out


class ExamSessionRegistry:
    """
    In-progress exams, one timer each. A background loop calls `tick_all()`
    once per second; expiry and a manual submit race through the session's
    SubmitGuard, so each attempt is stored once.
    """

    def __init__(
        self,
        submission_service: SubmissionService,
        question_repository,
        layout: StorageLayout,
        *,
        duration_seconds: int = 3600,
        warning_seconds: int = 600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.submission_service = submission_service
        self.question_repository = question_repository
        self.layout = layout
        self.duration_seconds = duration_seconds
        self.warning_seconds = warning_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, ExamSession] = {}

    def start(self, exam_type: str, exam_id: int, examinee_name: str, examinee_id: str) -> ExamSession:
        et = validate_exam_type(exam_type)
        name, eid = validate_examinee(examinee_name, examinee_id)
        try:
            qid = int(exam_id)
        except (TypeError, ValueError):
            raise InvalidPayload("examId must be an integer") from None
        exam = self.question_repository.get_question(et, qid)
        if not exam:
            raise NotFound("Exam not found")

        token = secrets.token_urlsafe(12)
        timer = ExamTimer(
            duration_seconds=self.duration_seconds,
            warning_seconds=self.warning_seconds,
            clock=self._clock,
        )
        session = ExamSession(
            token=token,
            exam_type=et,
            exam=dict(exam),
            examinee_name=name,
            examinee_id=eid,
            timer=timer,
            started_at=datetime.now(timezone.utc),
        )
        timer.on_expire = lambda: self._on_expire(token)

        try:
            self.layout.write_active_marker(name, eid, et, exam=session.exam)
        except Exception:
            logger.warning("Write active exam marker failed (examinee=%s_%s, type=%s)", name, eid, et, exc_info=True)

        with self._lock:
            self._sessions[token] = session
        timer.start()
        logger.info("Exam session started (token=%s, type=%s, exam_id=%s, examinee=%s_%s)", token, et, qid, name, eid)
        return session

    def get(self, token: str) -> ExamSession:
        with self._lock:
            session = self._sessions.get(str(token or ""))
        if session is None:
            raise NotFound("Exam session not found")
        return session

    def status(self, token: str) -> dict[str, Any]:
        session = self.get(token)
        session.timer.tick()
        return session.snapshot()

    def save_answers(self, token: str, answers: Any) -> ExamSession:
        if not isinstance(answers, dict):
            raise InvalidPayload("answers must be an object")
        session = self.get(token)
        if session.finalized or session.guard.claimed:
            raise AlreadySubmitted()
        for k, v in answers.items():
            key = str(k or "").strip()
            if not key or v is None:
                continue
            session.answers[key] = [str(x) for x in v] if isinstance(v, list) else str(v)
        return session

    def submit(self, token: str) -> SubmissionResult:
        session = self.get(token)
        session.timer.complete()
        return self._finalize(session, reason="manual")

    def cancel(self, token: str) -> bool:
        with self._lock:
            session = self._sessions.pop(str(token or ""), None)
        if session is None:
            return False
        session.timer.cancel()
        logger.info("Exam session cancelled (token=%s)", token)
        return True

    def tick_all(self) -> int:
        """Advance every running timer; returns how many expired on this pass."""
        now = self._clock()
        with self._lock:
            sessions = list(self._sessions.values())
            stale = [
                s.token
                for s in sessions
                if s.finished_at is not None and now - s.finished_at > FINISHED_TTL_SECONDS
            ]
            for token in stale:
                self._sessions.pop(token, None)
        expired = 0
        for s in sessions:
            if not s.timer.is_running:
                continue
            s.timer.tick()
            if s.timer.state == EXPIRED:
                expired += 1
        return expired

    def _on_expire(self, token: str) -> None:
        try:
            session = self.get(token)
        except NotFound:
            return
        logger.info("Exam time is up, auto-submitting (token=%s)", token)
        try:
            self._finalize(session, reason="timeout")
        except Exception:
            logger.exception("Auto-submit failed (token=%s)", token)

    def _finalize(self, session: ExamSession, *, reason: str) -> SubmissionResult:
        # Claim and the per-attempt event are swapped together, so a caller that
        # loses to a retry never waits on the event of an earlier failed attempt.
        with session.attempt_lock:
            won = session.guard.claim()
            if won:
                session.done = threading.Event()
            done = session.done
        if not won:
            # Someone else is submitting this attempt; hand back their outcome.
            done.wait(FINALIZE_WAIT_SECONDS)
            if session.result is not None:
                return session.result
            raise AlreadySubmitted(session.error or "Exam submission already in progress")

        try:
            document = assemble_exam_pdf(
                session.exam_type,
                session.exam,
                session.answers,
                examinee_name=session.examinee_name,
                examinee_id=session.examinee_id,
                image_loader=self.layout.read_image_url,
            )
            result = self.submission_service.store_submission(
                exam_type=session.exam_type,
                exam_id=int(session.exam.get("id") or 0),
                exam_title=session.exam.get("title"),
                examinee_name=session.examinee_name,
                examinee_id=session.examinee_id,
                answers=dict(session.answers),
                time_spent=session.timer.elapsed_seconds,
                document=document,
            )
        except Exception as e:
            # Let the examinee retry; the timer is already terminal so it cannot fire again.
            # A failed session that is never retried still ages out of tick_all.
            with session.attempt_lock:
                session.error = getattr(e, "message", None) or "Exam submission failed"
                session.finished_at = self._clock()
                session.guard.release()
            done.set()
            raise
        session.result = result
        session.error = None
        session.finished_at = self._clock()
        done.set()
        logger.info(
            "Exam session finalized (token=%s, reason=%s, state=%s, submission_id=%s)",
            session.token, reason, session.timer.state, result.submission_id,
        )
        return result
