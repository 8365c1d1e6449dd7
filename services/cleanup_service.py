from __future__ import annotations

from typing import Any

from config import logger
from services.errors import InvalidPayload
from storage.layout import StorageLayout


class CleanupService:
    """
    Teacher-side deletions. Deleting is idempotent: a row or file that is
    already gone counts as success.
    """

    def __init__(self, layout: StorageLayout, repository) -> None:
        self.layout = layout
        self.repository = repository

    def delete_submission(self, submission_id: int) -> dict[str, Any]:
        row = self.repository.get_submission_by_id(submission_id)
        if not row:
            return {"deleted": False, "message": "Submission already deleted."}

        pdf_path = str(row.get("pdf_path") or "")
        if pdf_path:
            try:
                if not self.layout.delete_submission_file(pdf_path):
                    logger.warning("Submission file missing (id=%s, path=%s)", submission_id, pdf_path)
            except InvalidPayload:
                logger.warning("Submission has an unusable pdf_path (id=%s, path=%r)", submission_id, pdf_path)

        deleted = self.repository.delete_submission_by_id(submission_id)
        if not deleted:
            return {"deleted": False, "message": "Submission already deleted."}
        logger.info("Deleted submission id=%s", submission_id)
        return {"deleted": True, "message": "Submission deleted successfully"}

    def delete_examinee(self, examinee_id: str) -> dict[str, Any]:
        eid = str(examinee_id or "").strip()
        if not eid:
            raise InvalidPayload("Examinee ID is required")

        name = None
        try:
            name = self.repository.get_examinee_name(eid)
        except Exception:
            logger.warning("Examinee name lookup failed (id=%s)", eid, exc_info=True)
        if not name:
            logger.warning("Could not find name for examinee ID: %s. Deleting DB entries only.", eid)

        # Rows before files: an interrupted run leaves a folder to sweep, never a dangling row.
        rows = self.repository.delete_submissions_by_examinee(eid)
        logger.info("Deleted %s submissions for examinee ID: %s", rows, eid)

        folder_deleted = False
        if name:
            try:
                folder_deleted = self.layout.delete_examinee_tree(name, eid)
            except InvalidPayload:
                logger.warning("Examinee folder name is not usable (name=%r, id=%s)", name, eid)
            if folder_deleted:
                logger.info("Deleted folder for examinee: %s_%s", name, eid)
        return {
            "rows": rows,
            "folder_deleted": folder_deleted,
            "message": f"All data for examinee ID {eid} deleted successfully.",
        }

    def delete_everything(self) -> dict[str, Any]:
        rows = self.repository.delete_all_submissions()
        folders = self.layout.delete_all_examinee_trees()
        logger.info("Deleted all submissions (rows=%s, folders=%s)", rows, len(folders))
        return {
            "rows": rows,
            "folders": folders,
            "message": "All submissions deleted successfully",
        }
