from __future__ import annotations

import sys

from config import Settings
from db import Database, SubmissionRepository
from services.submission_service import SubmissionService
from storage.layout import StorageLayout


def main(argv: list[str]) -> int:
    settings = Settings.from_env()
    grace = int(argv[1]) if len(argv) > 1 else settings.reconcile_grace_seconds
    database = Database(settings.database_url)
    try:
        database.open()
    except RuntimeError as e:
        print(str(e), file=sys.stderr)
        return 1
    try:
        layout = StorageLayout(settings.storage_dir)
        service = SubmissionService(layout, SubmissionRepository(database))
        print("storage:", layout.root, "grace_seconds:", grace)
        out = service.reconcile_pending(grace)
        print("committed:", out["committed"], "discarded:", out["discarded"])
    finally:
        database.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
