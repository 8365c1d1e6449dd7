from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any

from config import logger
from services.errors import InvalidPayload, StorageWriteFailed
from storage.layout import StorageLayout, validate_exam_type, validate_examinee

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^;,]*)*?);base64,(?P<data>.*)$", re.S)
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class SubmissionResult:
    submission_id: int
    pdf_path: str
    folder_path: str
    filename: str

    def to_json(self) -> dict[str, Any]:
        return {
            "ok": True,
            "submissionId": self.submission_id,
            "pdfPath": self.pdf_path,
            "folderPath": self.folder_path,
            "filename": self.filename,
            "message": "Exam submitted successfully",
        }


def decode_document(data: str | None) -> bytes:
    """
    Decode a rendered document sent as a data URL (`data:application/pdf;base64,...`)
    or as bare base64. Malformed or empty input raises InvalidPayload.
    """
    raw = str(data or "").strip()
    if not raw:
        raise InvalidPayload("Missing document data")
    if raw.startswith("data:"):
        m = _DATA_URL_RE.match(raw)
        if not m:
            raise InvalidPayload("Malformed document data URL")
        mime = (m.group("mime") or "").lower()
        if mime and mime not in {"application/pdf", "application/octet-stream"}:
            raise InvalidPayload(f"Unsupported document type: {mime}")
        raw = m.group("data")
    raw = _WHITESPACE_RE.sub("", raw)
    try:
        out = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidPayload("Malformed document encoding") from None
    if not out:
        raise InvalidPayload("Empty document")
    return out


def _parse_time_spent(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        raise InvalidPayload("timeSpent must be an integer number of seconds") from None


def _parse_exam_id(value: Any) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidPayload("examId must be an integer") from None


class SubmissionService:
    """
    Turns a completed exam into a stored document plus a submission row.

    Rows are written ahead as `pending`, the file is written, then the row is
    committed. A row stuck in `pending` is resolved by `reconcile_pending`.
    """

    def __init__(self, layout: StorageLayout, repository) -> None:
        self.layout = layout
        self.repository = repository

    def submit_exam(self, payload: dict[str, Any] | None) -> SubmissionResult:
        if not isinstance(payload, dict):
            raise InvalidPayload("Expected a JSON object")
        missing = [
            k for k in ("examType", "examineeName", "examineeId", "pdfData") if not payload.get(k)
        ]
        if missing:
            raise InvalidPayload("Missing required data: " + ", ".join(missing))

        document = decode_document(payload.get("pdfData"))
        return self.store_submission(
            exam_type=payload.get("examType"),
            exam_id=_parse_exam_id(payload.get("examId")),
            exam_title=payload.get("examTitle"),
            examinee_name=payload.get("examineeName"),
            examinee_id=payload.get("examineeId"),
            answers=payload.get("answers"),
            time_spent=_parse_time_spent(payload.get("timeSpent")),
            document=document,
        )

    def store_submission(
        self,
        *,
        exam_type: str,
        exam_id: int,
        exam_title: str | None,
        examinee_name: str,
        examinee_id: str,
        answers: Any,
        time_spent: int | None,
        document: bytes,
    ) -> SubmissionResult:
        et = validate_exam_type(exam_type)
        name, eid = validate_examinee(examinee_name, examinee_id)
        title = str(exam_title or "").strip() or f"{et}_exam"
        if not document:
            raise InvalidPayload("Empty document")

        logger.info(
            "Exam submission received (type=%s, exam_id=%s, examinee=%s_%s, time_spent=%s)",
            et, exam_id, name, eid, time_spent,
        )

        planned = self.layout.plan_submission_file(et, name, eid, title)
        submission_id = self.repository.insert_submission(
            {
                "exam_type": et,
                "exam_id": exam_id,
                "exam_title": title,
                "examinee_name": name,
                "examinee_id": eid,
                "answers": answers,
                "pdf_filename": planned.filename,
                "pdf_path": planned.relative_path,
                "time_spent": time_spent,
            },
            status="pending",
        )

        try:
            stored = self.layout.write_planned_file(planned, document)
        except StorageWriteFailed:
            self._discard_pending(submission_id)
            raise

        if stored.relative_path != planned.relative_path:
            try:
                self.repository.update_pending_path(submission_id, stored.filename, stored.relative_path)
            except Exception:
                logger.exception("Record fallback filename failed (id=%s, path=%s)", submission_id, stored.relative_path)
                try:
                    self.layout.delete_submission_file(stored.relative_path)
                except OSError:
                    logger.exception("Remove unrecorded submission file failed: %s", stored.relative_path)
                self._discard_pending(submission_id)
                raise

        try:
            self.layout.remove_active_marker(name, eid, et)
        except Exception:
            logger.warning("Remove active exam marker failed (examinee=%s_%s, type=%s)", name, eid, et, exc_info=True)

        # A failure here leaves a pending row next to a complete file; the sweep commits it.
        self.repository.mark_submitted(submission_id)
        logger.info("Exam submission saved (id=%s, path=%s)", submission_id, stored.relative_path)

        return SubmissionResult(
            submission_id=submission_id,
            pdf_path=stored.relative_path,
            folder_path=stored.folder_path,
            filename=stored.filename,
        )

    def _discard_pending(self, submission_id: int) -> None:
        try:
            self.repository.delete_submission_by_id(submission_id)
        except Exception:
            logger.exception("Discard pending submission failed (id=%s)", submission_id)

    def reconcile_pending(self, grace_seconds: int = 300) -> dict[str, int]:
        """
        Resolve rows left `pending` for longer than `grace_seconds`: commit the
        ones whose document made it to disk, delete the rest.
        """
        committed = 0
        discarded = 0
        for row in self.repository.list_stale_pending(grace_seconds):
            sid = int(row["id"])
            try:
                p = self.layout.resolve_relative_path(str(row.get("pdf_path") or ""))
                has_file = p.is_file() and p.stat().st_size > 0
            except (InvalidPayload, OSError):
                has_file = False
            try:
                if has_file:
                    self.repository.mark_submitted(sid)
                    committed += 1
                else:
                    self.repository.delete_submission_by_id(sid)
                    discarded += 1
            except Exception:
                logger.exception("Reconcile pending submission failed (id=%s)", sid)
        if committed or discarded:
            logger.info("Reconciled pending submissions: committed=%s discarded=%s", committed, discarded)
        return {"committed": committed, "discarded": discarded}
