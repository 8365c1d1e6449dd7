from __future__ import annotations

import re
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from config import logger
from services.errors import InvalidPayload, StorageReadFailed, StorageWriteFailed
from storage.json_store import read_json, write_json

EXAM_TYPES = ("reading", "listening", "writing")

AUDIO_DIR_NAME = "teacher_audio_uploads"
IMAGE_DIR_NAME = "teacher_image_uploads"
PROTECTED_DIRS = frozenset({AUDIO_DIR_NAME, IMAGE_DIR_NAME})

ACTIVE_MARKER_NAME = "active_exam.json"

# Upper bound on `_N` suffixes tried when a planned filename is already taken.
MAX_NAME_ATTEMPTS = 1000

# Prefix of every relative path recorded in the database, independent of where the root lives.
RELATIVE_PREFIX = "storage"

_TITLE_UNSAFE_RE = re.compile(r"[^A-Za-z0-9]")
_EXAMINEE_ID_RE = re.compile(r"^[A-Za-z0-9]+$")
_EXT_RE = re.compile(r"^[A-Za-z0-9]{1,10}$")


@dataclass(frozen=True)
class StoredFile:
    filename: str
    relative_path: str
    absolute_path: Path

    @property
    def folder_path(self) -> str:
        return self.relative_path.rsplit("/", 1)[0] + "/"


def validate_exam_type(exam_type: str | None) -> str:
    v = str(exam_type or "").strip().lower()
    if v not in EXAM_TYPES:
        raise InvalidPayload(f"Unknown exam type: {exam_type!r}")
    return v


def validate_examinee(name: str | None, examinee_id: str | None) -> tuple[str, str]:
    """
    Check an examinee identity before it becomes a folder name.

    Names may contain underscores; ids may not, so splitting a folder key on
    its last underscore always recovers the pair.
    """
    n = str(name or "").strip()
    i = str(examinee_id or "").strip()
    if not n or n in {".", ".."} or "/" in n or "\\" in n or "\x00" in n:
        raise InvalidPayload("Invalid examinee name")
    if not _EXAMINEE_ID_RE.fullmatch(i):
        raise InvalidPayload("Examinee id must be alphanumeric")
    return n, i


def folder_key(name: str, examinee_id: str) -> str:
    return f"{name}_{examinee_id}"


def split_folder_key(key: str) -> tuple[str, str]:
    k = str(key or "")
    idx = k.rfind("_")
    if idx <= 0 or idx == len(k) - 1:
        raise InvalidPayload("Invalid examinee folder")
    return k[:idx], k[idx + 1 :]


def is_examinee_folder_key(key: str) -> bool:
    """True for directory names of the form `{name}_{id}` that validate_examinee accepts."""
    try:
        validate_examinee(*split_folder_key(key))
    except InvalidPayload:
        return False
    return True


def sanitize_title(title: str | None) -> str:
    return _TITLE_UNSAFE_RE.sub("_", str(title or ""))


def submission_filename(title: str | None, exam_type: str, *, now: datetime | None = None) -> str:
    if now is None:
        now = datetime.now(timezone.utc)
    # e.g. 2025-01-31T09-15-02-123Z
    stamp = now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"
    base = sanitize_title(title) or exam_type
    return f"{base}_{stamp}.pdf"


def _extension_of(original_name: str, default: str) -> str:
    ext = str(original_name or "").rsplit(".", 1)[-1] if "." in str(original_name or "") else ""
    ext = ext.strip().lower()
    return ext if _EXT_RE.fullmatch(ext) else default


class StorageLayout:
    """Maps examinee identities and exam types onto the storage tree."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()

    def ensure_root(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    # ---------------- examinee folders ----------------

    def examinee_dir(self, name: str, examinee_id: str) -> Path:
        n, i = validate_examinee(name, examinee_id)
        return self.root / folder_key(n, i)

    def exam_type_dir(self, name: str, examinee_id: str, exam_type: str) -> Path:
        return self.examinee_dir(name, examinee_id) / validate_exam_type(exam_type)

    def ensure_examinee_folder(self, name: str, examinee_id: str) -> Path:
        p = self.examinee_dir(name, examinee_id)
        try:
            p.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.exception("Create examinee folder failed: %s", p)
            raise StorageWriteFailed() from e
        return p

    def ensure_exam_type_folder(self, name: str, examinee_id: str, exam_type: str) -> Path:
        self.ensure_examinee_folder(name, examinee_id)
        p = self.exam_type_dir(name, examinee_id, exam_type)
        try:
            p.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.exception("Create exam type folder failed: %s", p)
            raise StorageWriteFailed() from e
        return p

    def list_examinee_folders(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(
            p.name
            for p in self.root.iterdir()
            if p.is_dir() and p.name not in PROTECTED_DIRS and is_examinee_folder_key(p.name)
        )

    def list_examinee_pdfs(self, name: str, examinee_id: str) -> dict[str, list[str]]:
        out: dict[str, list[str]] = {t: [] for t in EXAM_TYPES}
        base = self.examinee_dir(name, examinee_id)
        for t in EXAM_TYPES:
            d = base / t
            if d.is_dir():
                out[t] = sorted(p.name for p in d.iterdir() if p.is_file() and p.suffix == ".pdf")
        return out

    # ---------------- submission files ----------------

    def plan_submission_file(
        self,
        exam_type: str,
        name: str,
        examinee_id: str,
        title: str | None,
        *,
        now: datetime | None = None,
    ) -> StoredFile:
        """Pick the filename and paths for a submission without touching the disk."""
        et = validate_exam_type(exam_type)
        n, i = validate_examinee(name, examinee_id)
        folder = self.root / folder_key(n, i) / et
        filename = submission_filename(title, et, now=now)
        stem = filename[: -len(".pdf")]
        seq = 1
        while (folder / filename).exists():
            seq += 1
            filename = f"{stem}_{seq}.pdf"
        return StoredFile(
            filename=filename,
            relative_path=f"{RELATIVE_PREFIX}/{folder_key(n, i)}/{et}/{filename}",
            absolute_path=folder / filename,
        )

    def write_planned_file(self, planned: StoredFile, data: bytes) -> StoredFile:
        """
        Write a planned document. If another writer took the planned name in the
        meantime, the next free `_N` name is used; the returned StoredFile is
        the one actually written.
        """
        stored = planned
        stem = planned.filename[: -len(".pdf")]
        seq = 1
        while True:
            p = stored.absolute_path
            try:
                p.parent.mkdir(parents=True, exist_ok=True)
                # "xb": never overwrite another submission's document
                with p.open("xb") as f:
                    f.write(data)
                break
            except FileExistsError:
                seq += 1
                if seq > MAX_NAME_ATTEMPTS:
                    logger.error("No free submission filename after %s attempts: %s", MAX_NAME_ATTEMPTS, planned.absolute_path)
                    raise StorageWriteFailed() from None
                filename = f"{stem}_{seq}.pdf"
                stored = StoredFile(
                    filename=filename,
                    relative_path=planned.folder_path + filename,
                    absolute_path=planned.absolute_path.with_name(filename),
                )
            except OSError as e:
                logger.exception("Write submission file failed: %s", p)
                raise StorageWriteFailed() from e
        if stored is not planned:
            logger.info("Planned submission filename taken, wrote %s instead", stored.filename)
        logger.info("Submission file saved: %s (%s bytes)", stored.absolute_path, len(data))
        return stored

    def write_submission_file(
        self,
        data: bytes,
        exam_type: str,
        name: str,
        examinee_id: str,
        title: str | None,
    ) -> StoredFile:
        self.ensure_exam_type_folder(name, examinee_id, exam_type)
        planned = self.plan_submission_file(exam_type, name, examinee_id, title)
        return self.write_planned_file(planned, data)

    def resolve_relative_path(self, relative_path: str) -> Path:
        rp = str(relative_path or "").strip().replace("\\", "/").lstrip("/")
        prefix = RELATIVE_PREFIX + "/"
        if rp.startswith(prefix):
            rp = rp[len(prefix) :]
        if not rp:
            raise InvalidPayload("Invalid storage path")
        p = (self.root / rp).resolve()
        if self.root not in p.parents:
            raise InvalidPayload("Invalid storage path")
        return p

    def delete_submission_file(self, relative_path: str) -> bool:
        """
        Delete a stored document, then prune exam-type and examinee folders left empty.

        Returns False when the file was already gone.
        """
        p = self.resolve_relative_path(relative_path)
        existed = p.is_file()
        if existed:
            p.unlink()
            logger.info("Deleted submission file: %s", p)
        else:
            logger.info("Submission file already absent: %s", p)
        self._prune_empty_parents(p.parent)
        return existed

    def _prune_empty_parents(self, directory: Path) -> None:
        d = directory
        while d != self.root and self.root in d.parents:
            if d.parent == self.root and d.name in PROTECTED_DIRS:
                return
            try:
                if not d.is_dir() or any(d.iterdir()):
                    return
                d.rmdir()
            except OSError:
                logger.warning("Prune folder failed: %s", d)
                return
            logger.info("Pruned empty folder: %s", d)
            d = d.parent

    def delete_examinee_tree(self, name: str, examinee_id: str) -> bool:
        p = self.examinee_dir(name, examinee_id)
        if not p.exists():
            return False
        shutil.rmtree(p)
        logger.info("Deleted examinee folder: %s", p)
        return True

    def delete_all_examinee_trees(self) -> list[str]:
        removed: list[str] = []
        if not self.root.exists():
            return removed
        for p in self.root.iterdir():
            if not p.is_dir() or p.name in PROTECTED_DIRS or not is_examinee_folder_key(p.name):
                continue
            shutil.rmtree(p)
            removed.append(p.name)
        logger.info("Deleted %s examinee folders", len(removed))
        return sorted(removed)

    def read_submission_file(
        self, name: str, examinee_id: str, exam_type: str, filename: str
    ) -> bytes | None:
        base = self.exam_type_dir(name, examinee_id, exam_type)
        return self._read_inside(base, filename)

    # ---------------- teacher uploads ----------------

    def _save_asset(self, dirname: str, data: bytes, original_name: str, default_ext: str, kind: str) -> dict[str, str]:
        d = self.root / dirname
        filename = f"{uuid.uuid4()}.{_extension_of(original_name, default_ext)}"
        p = d / filename
        try:
            d.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        except OSError as e:
            logger.exception("Write %s upload failed: %s", kind, p)
            raise StorageWriteFailed() from e
        return {"filename": filename, "path": f"/api/files/{kind}/{filename}"}

    def save_audio_file(self, data: bytes, original_name: str) -> dict[str, str]:
        return self._save_asset(AUDIO_DIR_NAME, data, original_name, "mp3", "audio")

    def save_image_file(self, data: bytes, original_name: str) -> dict[str, str]:
        return self._save_asset(IMAGE_DIR_NAME, data, original_name, "png", "image")

    def read_audio_file(self, filename: str) -> bytes | None:
        return self._read_inside(self.root / AUDIO_DIR_NAME, filename)

    def read_image_file(self, filename: str) -> bytes | None:
        return self._read_inside(self.root / IMAGE_DIR_NAME, filename)

    def read_image_url(self, url: str) -> bytes | None:
        """Resolve an `/api/files/image/<name>` URL (or a bare filename) to stored image bytes."""
        u = str(url or "").split("?", 1)[0].strip()
        prefix = "/api/files/image/"
        if u.startswith(prefix):
            u = u[len(prefix) :]
        elif "/" in u:
            return None
        return self.read_image_file(u)

    def _read_inside(self, base: Path, filename: str) -> bytes | None:
        name = str(filename or "")
        if not name or "/" in name or "\\" in name or name in {".", ".."}:
            return None
        p = base / name
        if not p.is_file():
            return None
        try:
            return p.read_bytes()
        except OSError as e:
            logger.exception("Read file failed: %s", p)
            raise StorageReadFailed() from e

    # ---------------- active exam marker ----------------

    def _marker_path(self, name: str, examinee_id: str, exam_type: str) -> Path:
        return self.exam_type_dir(name, examinee_id, exam_type) / ACTIVE_MARKER_NAME

    def write_active_marker(
        self,
        name: str,
        examinee_id: str,
        exam_type: str,
        exam: dict[str, Any] | None = None,
    ) -> Path:
        self.ensure_exam_type_folder(name, examinee_id, exam_type)
        p = self._marker_path(name, examinee_id, exam_type)
        marker = {
            "exam_type": validate_exam_type(exam_type),
            "exam_id": (exam or {}).get("id"),
            "exam_title": (exam or {}).get("title"),
            "start_time": datetime.now(timezone.utc).isoformat(),
            "status": "in_progress",
        }
        try:
            write_json(p, marker)
        except OSError as e:
            logger.exception("Write active exam marker failed: %s", p)
            raise StorageWriteFailed() from e
        return p

    def read_active_marker(self, name: str, examinee_id: str, exam_type: str) -> dict[str, Any] | None:
        p = self._marker_path(name, examinee_id, exam_type)
        if not p.is_file():
            return None
        try:
            return read_json(p)
        except (OSError, ValueError):
            logger.warning("Unreadable active exam marker: %s", p)
            return None

    def remove_active_marker(self, name: str, examinee_id: str, exam_type: str) -> bool:
        p = self._marker_path(name, examinee_id, exam_type)
        if not p.exists():
            return False
        p.unlink()
        self._prune_empty_parents(p.parent)
        return True
