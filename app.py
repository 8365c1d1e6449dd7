from __future__ import annotations

import atexit
import mimetypes
import os
import threading
import time
from datetime import date, datetime
from io import BytesIO
from typing import Any

from flask import Flask, request, send_file
from werkzeug.exceptions import HTTPException

from config import Settings, logger
from db import Database, QuestionRepository, SubmissionRepository, init_db, normalize_question_fields
from services.cleanup_service import CleanupService
from services.errors import ExamPortalError, InvalidPayload, NotFound
from services.exam_session import ExamSessionRegistry
from services.submission_service import SubmissionService
from storage.layout import StorageLayout, split_folder_key

_EXAM_TYPE_RULE = "any(reading, listening, writing)"
_IMAGE_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def _json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidPayload("Expected a JSON object")
    return data


def _uploaded_bytes(field: str) -> tuple[bytes, str, str]:
    f = request.files.get(field)
    if f is None or not f.filename:
        raise InvalidPayload(f"No {field} file provided")
    data = f.read()
    if not data:
        raise InvalidPayload(f"Empty {field} file")
    return data, f.filename, (f.mimetype or "")


def create_app(
    settings: Settings | None = None,
    *,
    database: Database | None = None,
    submission_repository=None,
    question_repository=None,
    clock=time.monotonic,
) -> Flask:
    """
    Build the application.

    Repositories may be injected; otherwise a Database handle is opened here and
    closed at interpreter exit.
    """
    if settings is None:
        settings = Settings.from_env()

    app = Flask(__name__)
    app.secret_key = settings.secret_key
    app.config["MAX_CONTENT_LENGTH"] = int(settings.max_upload_mb) * 1024 * 1024

    if submission_repository is None or question_repository is None:
        if database is None:
            database = Database(settings.database_url)
        try:
            database.open()
            init_db(database)
        except RuntimeError as e:
            raise SystemExit(str(e))
        atexit.register(database.close)
        if submission_repository is None:
            submission_repository = SubmissionRepository(database)
        if question_repository is None:
            question_repository = QuestionRepository(database)

    layout = StorageLayout(settings.storage_dir)
    layout.ensure_root()
    submissions = SubmissionService(layout, submission_repository)
    cleanup = CleanupService(layout, submission_repository)
    sessions = ExamSessionRegistry(
        submissions,
        question_repository,
        layout,
        duration_seconds=settings.exam_duration_seconds,
        warning_seconds=settings.exam_warning_seconds,
        clock=clock,
    )
    app.extensions["exam_portal"] = {
        "settings": settings,
        "database": database,
        "layout": layout,
        "submissions": submissions,
        "cleanup": cleanup,
        "sessions": sessions,
        "submission_repository": submission_repository,
        "question_repository": question_repository,
    }

    try:
        submissions.reconcile_pending(settings.reconcile_grace_seconds)
    except Exception:
        logger.exception("Startup reconcile of pending submissions failed")

    # Start only once (avoid Flask reloader double-start).
    if settings.enable_background_loops:
        if os.getenv("WERKZEUG_RUN_MAIN") == "true" or not app.debug:
            threading.Thread(target=_timer_loop, args=(sessions,), daemon=True).start()
            threading.Thread(
                target=_reconcile_loop,
                args=(submissions,),
                kwargs={
                    "grace_seconds": settings.reconcile_grace_seconds,
                    "interval_seconds": settings.reconcile_interval_seconds,
                },
                daemon=True,
            ).start()

    # ---------------- error boundary ----------------
    @app.errorhandler(ExamPortalError)
    def _handle_portal_error(e: ExamPortalError):
        if e.status >= 500:
            logger.error("%s: %s (%s %s)", e.code, e.message, request.method, request.path)
        return {"ok": False, "error": e.code, "message": e.message}, e.status

    @app.errorhandler(FileNotFoundError)
    def _handle_file_not_found(_e):
        return {"ok": False, "error": "not_found", "message": "Not found"}, 404

    @app.errorhandler(HTTPException)
    def _handle_http_error(e: HTTPException):
        code = (e.name or "error").lower().replace(" ", "_")
        return {"ok": False, "error": code, "message": e.name or "Error"}, e.code or 500

    @app.errorhandler(Exception)
    def _handle_unexpected(_e: Exception):
        logger.exception("Unhandled error (%s %s)", request.method, request.path)
        return {"ok": False, "error": "internal_error", "message": "Internal server error"}, 500

    @app.get("/healthz")
    def healthz():
        return {"ok": True, "db": (database.is_open if database is not None else None)}

    # ---------------- submissions ----------------
    @app.post("/api/submit-exam")
    def submit_exam():
        result = submissions.submit_exam(_json_body())
        return result.to_json()

    @app.get("/api/submissions")
    def list_submissions():
        rows = submission_repository.list_submissions()
        return {"ok": True, "submissions": _jsonable(rows)}

    @app.delete("/api/submissions")
    def delete_all_submissions():
        out = cleanup.delete_everything()
        return {"ok": True, **out}

    @app.get("/api/submissions/<int:submission_id>")
    def get_submission(submission_id: int):
        row = submission_repository.get_submission_by_id(submission_id)
        if not row or row.get("status") != "submitted":
            raise NotFound("Submission not found")
        return {"ok": True, "submission": _jsonable(row)}

    @app.delete("/api/submissions/<int:submission_id>")
    def delete_submission(submission_id: int):
        out = cleanup.delete_submission(submission_id)
        return {"ok": True, **out}

    @app.get("/api/submissions/examinee/<examinee_id>")
    def list_examinee_submissions(examinee_id: str):
        rows = submission_repository.list_submissions_by_examinee(examinee_id)
        return {"ok": True, "submissions": _jsonable(rows)}

    @app.delete("/api/submissions/examinee/<examinee_id>")
    def delete_examinee_submissions(examinee_id: str):
        out = cleanup.delete_examinee(examinee_id)
        return {"ok": True, **out}

    @app.get("/api/examinees")
    def list_examinee_folders():
        return {"ok": True, "folders": layout.list_examinee_folders()}

    @app.get("/api/examinees/<name_id>/pdfs")
    def list_examinee_pdfs(name_id: str):
        name, eid = split_folder_key(name_id)
        return {"ok": True, "folder": name_id, "pdfs": layout.list_examinee_pdfs(name, eid)}

    # ---------------- files ----------------
    @app.get("/api/files/pdf/<name_id>/<exam_type>/<filename>")
    def get_pdf(name_id: str, exam_type: str, filename: str):
        name, eid = split_folder_key(name_id)
        data = layout.read_submission_file(name, eid, exam_type, filename)
        if data is None:
            raise NotFound("PDF file not found")
        resp = send_file(BytesIO(data), mimetype="application/pdf", download_name=filename)
        resp.headers["Content-Disposition"] = f'inline; filename="{filename}"'
        resp.headers["Cache-Control"] = "public, max-age=31536000"
        return resp

    @app.post("/api/upload/audio")
    def upload_audio():
        data, original_name, _ = _uploaded_bytes("audio")
        saved = layout.save_audio_file(data, original_name)
        return {"ok": True, **saved, "originalName": original_name, "size": len(data)}

    @app.post("/api/upload/image")
    def upload_image():
        data, original_name, mimetype = _uploaded_bytes("image")
        if not mimetype.startswith("image/"):
            raise InvalidPayload("Invalid file type. Please upload an image.")
        saved = layout.save_image_file(data, original_name)
        return {"ok": True, **saved, "originalName": original_name, "size": len(data)}

    @app.get("/api/files/audio/<filename>")
    def get_audio(filename: str):
        data = layout.read_audio_file(filename)
        if data is None:
            raise NotFound("Audio file not found")
        mimetype = mimetypes.guess_type(filename)[0] or "audio/mpeg"
        resp = send_file(BytesIO(data), mimetype=mimetype, download_name=filename)
        resp.headers["Cache-Control"] = "public, max-age=31536000"
        return resp

    @app.get("/api/files/image/<filename>")
    def get_image(filename: str):
        data = layout.read_image_file(filename)
        if data is None:
            raise NotFound("Image file not found")
        ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        resp = send_file(
            BytesIO(data),
            mimetype=_IMAGE_TYPES.get(ext, "application/octet-stream"),
            download_name=filename,
        )
        resp.headers["Cache-Control"] = "public, max-age=31536000"
        return resp

    # ---------------- question banks ----------------
    @app.get(f"/api/<{_EXAM_TYPE_RULE}:exam_type>-questions")
    def list_questions(exam_type: str):
        return {"ok": True, "questions": _jsonable(question_repository.list_questions(exam_type))}

    @app.post(f"/api/<{_EXAM_TYPE_RULE}:exam_type>-questions")
    def create_question(exam_type: str):
        fields = normalize_question_fields(exam_type, _json_body())
        qid = question_repository.create_question(exam_type, fields)
        logger.info("Created %s question id=%s", exam_type, qid)
        return {"ok": True, "id": qid, "message": f"{exam_type.capitalize()} question created successfully"}, 201

    @app.get(f"/api/<{_EXAM_TYPE_RULE}:exam_type>-questions/<int:question_id>")
    def get_question(exam_type: str, question_id: int):
        row = question_repository.get_question(exam_type, question_id)
        if not row:
            raise NotFound("Question not found")
        return {"ok": True, "question": _jsonable(row)}

    @app.put(f"/api/<{_EXAM_TYPE_RULE}:exam_type>-questions/<int:question_id>")
    def update_question(exam_type: str, question_id: int):
        fields = normalize_question_fields(exam_type, _json_body())
        if not question_repository.update_question(exam_type, question_id, fields):
            raise NotFound("Question not found")
        return {"ok": True, "message": "Question updated successfully"}

    @app.delete(f"/api/<{_EXAM_TYPE_RULE}:exam_type>-questions/<int:question_id>")
    def delete_question(exam_type: str, question_id: int):
        deleted = question_repository.delete_question(exam_type, question_id)
        return {"ok": True, "deleted": deleted}

    # ---------------- exam sessions ----------------
    @app.post("/api/exam-sessions")
    def start_exam_session():
        data = _json_body()
        session = sessions.start(
            data.get("examType"),
            data.get("examId"),
            data.get("examineeName"),
            data.get("examineeId"),
        )
        return {"ok": True, "session": _jsonable(session.snapshot()), "exam": _jsonable(session.exam)}, 201

    @app.get("/api/exam-sessions/<token>")
    def exam_session_status(token: str):
        return {"ok": True, "session": _jsonable(sessions.status(token))}

    @app.post("/api/exam-sessions/<token>/answers")
    def save_exam_answers(token: str):
        session = sessions.save_answers(token, _json_body().get("answers"))
        return {"ok": True, "session": _jsonable(session.snapshot())}

    @app.post("/api/exam-sessions/<token>/submit")
    def submit_exam_session(token: str):
        data = request.get_json(silent=True)
        session = sessions.get(token)
        # Last answers ride along with the submit click; a late duplicate click just gets the result.
        if isinstance(data, dict) and isinstance(data.get("answers"), dict) and not session.guard.claimed:
            sessions.save_answers(token, data["answers"])
        result = sessions.submit(token)
        return result.to_json()

    @app.delete("/api/exam-sessions/<token>")
    def cancel_exam_session(token: str):
        return {"ok": True, "cancelled": sessions.cancel(token)}

    return app


def _timer_loop(sessions: ExamSessionRegistry, *, interval_seconds: float = 1.0) -> None:
    """Background loop: advance exam countdowns and auto-submit the ones that run out."""
    while True:
        try:
            sessions.tick_all()
        except Exception:
            logger.exception("Exam timer loop failed")
        time.sleep(interval_seconds)


def _reconcile_loop(service: SubmissionService, *, grace_seconds: int, interval_seconds: int) -> None:
    while True:
        time.sleep(max(1, interval_seconds))
        try:
            service.reconcile_pending(grace_seconds)
        except Exception:
            logger.exception("Reconcile loop failed")


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=True)
