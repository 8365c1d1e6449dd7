from __future__ import annotations

import base64
import json
from datetime import datetime, timezone
from typing import Any, Callable

import fitz  # PyMuPDF

from config import logger

PAGE_WIDTH, PAGE_HEIGHT = fitz.paper_size("a4")
MARGIN = 57.0  # ~20mm
FONT = "helv"
FONT_BOLD = "hebo"
BODY_SIZE = 11
HEADING_SIZE = 16
LINE_HEIGHT = 16.0
MAX_IMAGE_HEIGHT = 300.0

NO_ANSWER = "No answer provided"

ImageLoader = Callable[[str], "bytes | None"]


def count_words(text: str | None) -> int:
    return len([w for w in str(text or "").split() if w])


def to_data_url(pdf_bytes: bytes) -> str:
    return "data:application/pdf;base64," + base64.b64encode(pdf_bytes).decode("ascii")


def _latin1(text: Any) -> str:
    # Base-14 fonts only carry Latin-1 glyphs.
    return str(text if text is not None else "").encode("latin-1", errors="replace").decode("latin-1")


class _PageWriter:
    """Flows wrapped lines down A4 pages, opening a new page when one fills up."""

    def __init__(self) -> None:
        self.doc = fitz.open()
        self.page = None
        self.y = 0.0
        self.width = PAGE_WIDTH - 2 * MARGIN
        self._new_page()

    def _new_page(self) -> None:
        self.page = self.doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
        self.y = MARGIN

    def _ensure_room(self, height: float) -> None:
        if self.y + height > PAGE_HEIGHT - MARGIN:
            self._new_page()

    def wrap(self, text: str, *, fontname: str = FONT, fontsize: float = BODY_SIZE) -> list[str]:
        lines: list[str] = []
        for para in _latin1(text).splitlines() or [""]:
            words = para.split()
            if not words:
                lines.append("")
                continue
            cur = ""
            for w in words:
                cand = f"{cur} {w}" if cur else w
                if fitz.get_text_length(cand, fontname=fontname, fontsize=fontsize) <= self.width:
                    cur = cand
                    continue
                if cur:
                    lines.append(cur)
                # Break words longer than a whole line.
                while fitz.get_text_length(w, fontname=fontname, fontsize=fontsize) > self.width and len(w) > 1:
                    cut = len(w)
                    while cut > 1 and fitz.get_text_length(w[:cut], fontname=fontname, fontsize=fontsize) > self.width:
                        cut -= 1
                    lines.append(w[:cut])
                    w = w[cut:]
                cur = w
            lines.append(cur)
        return lines

    def text(self, text: Any, *, bold: bool = False, fontsize: float = BODY_SIZE, center: bool = False) -> None:
        fontname = FONT_BOLD if bold else FONT
        line_height = max(LINE_HEIGHT, fontsize * 1.45)
        for line in self.wrap(str(text if text is not None else ""), fontname=fontname, fontsize=fontsize):
            self._ensure_room(line_height)
            x = MARGIN
            if center:
                x = (PAGE_WIDTH - fitz.get_text_length(line, fontname=fontname, fontsize=fontsize)) / 2
            self.page.insert_text((x, self.y + fontsize), line, fontname=fontname, fontsize=fontsize)
            self.y += line_height

    def gap(self, lines: float = 1.0) -> None:
        self.y += LINE_HEIGHT * lines

    def image(self, data: bytes) -> bool:
        try:
            pix = fitz.Pixmap(data)
            w, h = float(pix.width), float(pix.height)
        except Exception:
            logger.warning("Skipping unreadable image in exam PDF", exc_info=True)
            return False
        if w <= 0 or h <= 0:
            return False
        scale = min(self.width / w, MAX_IMAGE_HEIGHT / h, 1.0)
        dw, dh = w * scale, h * scale
        self._ensure_room(dh)
        rect = fitz.Rect(MARGIN, self.y, MARGIN + dw, self.y + dh)
        self.page.insert_image(rect, stream=data, keep_proportion=True)
        self.y += dh + LINE_HEIGHT / 2
        return True

    def finish(self) -> bytes:
        try:
            return self.doc.tobytes(garbage=3, deflate=True)
        finally:
            self.doc.close()


def _load_questions(value: Any) -> list[Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return []
    return value if isinstance(value, list) else []


def _question_text(q: Any, number: int) -> str:
    if isinstance(q, dict):
        return str(q.get("text") or q.get("question") or f"Question {number}")
    return str(q or f"Question {number}")


def _answer_at(answers: Any, index: int) -> str:
    """Answers are keyed by 0-based question index across the whole exam."""
    v: Any = None
    if isinstance(answers, list):
        v = answers[index] if index < len(answers) else None
    elif isinstance(answers, dict):
        v = answers.get(str(index), answers.get(index))
    if isinstance(v, list):
        v = ", ".join(str(x) for x in v)
    v = str(v or "").strip()
    return v or NO_ANSWER


def _essay_answer(answers: Any) -> str:
    if isinstance(answers, str):
        return answers
    if isinstance(answers, dict):
        for k in ("essay", "answer", "0", 0):
            if answers.get(k):
                return str(answers[k])
    if isinstance(answers, list) and answers:
        return str(answers[0] or "")
    return ""


def _write_qa(w: _PageWriter, number: int, text: str, answer: str) -> None:
    w.text(f"Question {number}:", bold=True)
    w.text(text)
    w.gap(0.5)
    w.text("Answer:", bold=True)
    w.text(answer)
    w.gap(1.0)


def _write_image(w: _PageWriter, url: Any, image_loader: ImageLoader | None) -> None:
    if not url or image_loader is None:
        return
    try:
        data = image_loader(str(url))
    except Exception:
        logger.warning("Image load failed for exam PDF: %s", url, exc_info=True)
        return
    if data:
        w.image(data)


def _write_reading(w: _PageWriter, exam: dict[str, Any], answers: Any, image_loader: ImageLoader | None) -> None:
    items = _load_questions(exam.get("questions"))
    is_passages = any(isinstance(p, dict) and ("passage" in p or "instructionGroups" in p) for p in items)
    index = 0
    if not is_passages:
        w.text("Reading Passage:", bold=True)
        w.text(exam.get("passage") or "")
        w.gap()
        w.text("Questions and Answers:", bold=True)
        w.gap(0.5)
        for q in items:
            _write_qa(w, index + 1, _question_text(q, index + 1), _answer_at(answers, index))
            index += 1
        return

    for pnum, passage in enumerate(items, start=1):
        if not isinstance(passage, dict):
            continue
        title = str(passage.get("title") or "").strip()
        w.text(f"Passage {pnum}" + (f": {title}" if title else ""), bold=True, fontsize=13)
        w.text(passage.get("passage") or "")
        _write_image(w, passage.get("image_url") or passage.get("imageUrl"), image_loader)
        w.gap()
        for group in passage.get("instructionGroups") or []:
            if not isinstance(group, dict):
                continue
            instruction = str(group.get("instructionText") or "").strip()
            if instruction:
                w.text(instruction, bold=True)
                w.gap(0.5)
            for q in group.get("questions") or []:
                _write_qa(w, index + 1, _question_text(q, index + 1), _answer_at(answers, index))
                index += 1
        for q in passage.get("questions") or []:
            _write_qa(w, index + 1, _question_text(q, index + 1), _answer_at(answers, index))
            index += 1


def _write_listening(w: _PageWriter, exam: dict[str, Any], answers: Any) -> None:
    w.text("Audio:", bold=True)
    w.text(exam.get("audio_url") or "No audio file")
    w.gap()
    w.text("Questions and Answers:", bold=True)
    w.gap(0.5)
    for index, q in enumerate(_load_questions(exam.get("questions"))):
        _write_qa(w, index + 1, _question_text(q, index + 1), _answer_at(answers, index))


def _write_writing(w: _PageWriter, exam: dict[str, Any], answers: Any, image_loader: ImageLoader | None) -> None:
    w.text("Prompt:", bold=True)
    w.text(exam.get("prompt") or "")
    w.gap(0.5)
    _write_image(w, exam.get("image_url"), image_loader)
    if exam.get("instructions"):
        w.text("Instructions:", bold=True)
        w.text(exam.get("instructions"))
        w.gap(0.5)
    essay = _essay_answer(answers)
    limit = exam.get("word_limit")
    words = count_words(essay)
    w.text(f"Word count: {words}" + (f" (limit {limit})" if limit else ""))
    w.gap()
    w.text("Answer:", bold=True)
    w.text(essay.strip() or NO_ANSWER)


def assemble_exam_pdf(
    exam_type: str,
    exam: dict[str, Any],
    answers: Any,
    *,
    examinee_name: str,
    examinee_id: str,
    submitted_at: datetime | None = None,
    image_loader: ImageLoader | None = None,
) -> bytes:
    """
    Render an exam attempt (content plus answers) into a paginated PDF.

    `image_loader` maps an image URL from the exam content to its bytes; images
    it cannot resolve are left out.
    """
    if submitted_at is None:
        submitted_at = datetime.now(timezone.utc)
    w = _PageWriter()
    w.text(f"{exam_type.capitalize()} Exam Submission", bold=True, fontsize=HEADING_SIZE, center=True)
    w.gap()
    w.text(f"Student Name: {examinee_name}")
    w.text(f"Student ID: {examinee_id}")
    w.text(f"Exam Title: {exam.get('title') or ''}")
    w.text(f"Submission Date: {submitted_at.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}")
    w.gap()

    if exam_type == "reading":
        _write_reading(w, exam, answers, image_loader)
    elif exam_type == "listening":
        _write_listening(w, exam, answers)
    elif exam_type == "writing":
        _write_writing(w, exam, answers, image_loader)
    else:
        raise ValueError(f"Unknown exam type: {exam_type!r}")
    return w.finish()
