"""JSON record of one upgrade attempt."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class RunRecordService:
    """Collects phase outcomes for one upgrade attempt and writes them as JSON.

    With no ``record_file`` the record is kept in memory only; dry runs use
    that mode so they leave nothing on disk.
    """

    def __init__(self, record_file: Optional[str], logger):
        self.record_file = record_file
        self.logger = logger
        self.record: Dict[str, Any] = {
            "upgrade_instance_id": None,
            "status": "running",
            "dry_run": False,
            "started_at": None,
            "finished_at": None,
            "versions": {"installed": None, "newest": None},
            "phases": [],
            "artifacts": {},
            "error": None,
        }

    def start(self, upgrade_instance_id: str, installed_version: str, dry_run: bool):
        self.record["upgrade_instance_id"] = upgrade_instance_id
        self.record["started_at"] = self._now()
        self.record["dry_run"] = dry_run
        self.record["versions"]["installed"] = installed_version
        self.write()

    def set_newest_version(self, newest_version: Optional[str]):
        self.record["versions"]["newest"] = newest_version
        self.write()

    def phase_finished(self, phase: str, success: bool, error_kind: Optional[str], message: Optional[str]):
        self.record["phases"].append(
            {
                "phase": phase,
                "success": success,
                "error_kind": error_kind,
                "message": message,
                "finished_at": self._now(),
            }
        )
        self.write()

    def add_artifact(self, key: str, value: str):
        self.record["artifacts"][key] = value
        self.write()

    def finalize(self, status: str, error: Optional[str] = None):
        self.record["status"] = status
        self.record["finished_at"] = self._now()
        self.record["error"] = error
        self.write()

    def write(self):
        if not self.record_file:
            return

        record_dir = os.path.dirname(self.record_file) or "."
        try:
            os.makedirs(record_dir, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(prefix="upgrade-record-", suffix=".json", dir=record_dir)
        except OSError as exc:
            self.logger.warning("Could not write upgrade record '%s': %s", self.record_file, exc)
            return

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(self.record, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.record_file)
        except OSError as exc:
            self.logger.warning("Could not write upgrade record '%s': %s", self.record_file, exc)
            try:
                os.remove(temp_path)
            except OSError:
                pass

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
