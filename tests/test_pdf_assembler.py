import base64
from datetime import datetime, timezone

import fitz
import pytest

from services.pdf_assembler import assemble_exam_pdf, count_words, to_data_url
from services.submission_service import decode_document

WHEN = datetime(2025, 3, 1, 10, 0, 0, tzinfo=timezone.utc)


def _text_of(pdf: bytes) -> tuple[int, str]:
    with fitz.open(stream=pdf, filetype="pdf") as doc:
        return doc.page_count, "\n".join(page.get_text() for page in doc)


def _png() -> bytes:
    pix = fitz.Pixmap(fitz.csRGB, fitz.IRect(0, 0, 40, 20), False)
    pix.clear_with(200)
    return pix.tobytes("png")


def test_count_words() -> None:
    assert count_words("") == 0
    assert count_words(None) == 0
    assert count_words("  one   two\nthree ") == 3


def test_reading_pdf_contains_header_and_answers() -> None:
    exam = {
        "title": "Mock Reading",
        "passage": "The quick brown fox.",
        "questions": [{"text": "What colour is the fox?"}, {"question": "Is it quick?"}],
    }
    pdf = assemble_exam_pdf(
        "reading", exam, {"0": "Brown"}, examinee_name="Jane", examinee_id="S100", submitted_at=WHEN
    )
    assert pdf.startswith(b"%PDF")
    pages, text = _text_of(pdf)
    assert pages == 1
    assert "Reading Exam Submission" in text
    assert "Student Name: Jane" in text
    assert "Student ID: S100" in text
    assert "What colour is the fox?" in text
    assert "Brown" in text
    assert "No answer provided" in text


def test_reading_passages_number_questions_across_groups() -> None:
    exam = {
        "title": "Passages",
        "questions": [
            {
                "title": "Bees",
                "passage": "Bees make honey.",
                "instructionGroups": [
                    {"instructionText": "Choose TRUE or FALSE", "questions": [{"text": "Bees make honey"}]},
                ],
            },
            {"title": "Ants", "passage": "Ants dig.", "questions": [{"text": "What do ants do?"}]},
        ],
    }
    pdf = assemble_exam_pdf(
        "reading", exam, ["TRUE", "Dig"], examinee_name="Jane", examinee_id="S100", submitted_at=WHEN
    )
    _, text = _text_of(pdf)
    assert "Passage 1: Bees" in text
    assert "Passage 2: Ants" in text
    assert "Question 2:" in text
    assert "Dig" in text


def test_long_content_paginates() -> None:
    exam = {"title": "Long", "audio_url": "/api/files/audio/a.mp3", "questions": [{"text": f"Q{i}"} for i in range(80)]}
    answers = {str(i): "word " * 60 for i in range(80)}
    pdf = assemble_exam_pdf("listening", exam, answers, examinee_name="Bob", examinee_id="S200", submitted_at=WHEN)
    pages, text = _text_of(pdf)
    assert pages > 3
    assert "/api/files/audio/a.mp3" in text


def test_writing_pdf_reports_word_count_and_embeds_image() -> None:
    png = _png()
    loaded = []

    def _loader(url):
        loaded.append(url)
        return png

    exam = {"title": "Essay", "prompt": "Describe the chart.", "word_limit": 250, "image_url": "/api/files/image/c.png"}
    pdf = assemble_exam_pdf(
        "writing",
        exam,
        {"essay": "The chart shows growth in sales."},
        examinee_name="Jane",
        examinee_id="S100",
        submitted_at=WHEN,
        image_loader=_loader,
    )
    assert loaded == ["/api/files/image/c.png"]
    with fitz.open(stream=pdf, filetype="pdf") as doc:
        assert len(doc[0].get_images()) == 1
        text = doc[0].get_text()
    assert "Word count: 6 (limit 250)" in text


def test_unreadable_image_is_skipped() -> None:
    exam = {"title": "Essay", "prompt": "P", "image_url": "x.png"}
    pdf = assemble_exam_pdf(
        "writing", exam, "", examinee_name="Jane", examinee_id="S100", image_loader=lambda url: b"not an image"
    )
    _, text = _text_of(pdf)
    assert "No answer provided" in text


def test_unknown_exam_type() -> None:
    with pytest.raises(ValueError):
        assemble_exam_pdf("maths", {}, {}, examinee_name="Jane", examinee_id="S100")


def test_to_data_url_feeds_submission_decoder() -> None:
    pdf = assemble_exam_pdf("listening", {"title": "L"}, {}, examinee_name="Jane", examinee_id="S100")
    url = to_data_url(pdf)
    assert url.startswith("data:application/pdf;base64,")
    assert decode_document(url) == pdf
    assert base64.b64decode(url.split(",", 1)[1]) == pdf
