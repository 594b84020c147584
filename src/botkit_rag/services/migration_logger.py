"""Per-run migration log files."""

import json
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from botkit_rag.models.migration import MigrationDirection
from botkit_rag.utils.logging import get_logger

logger = get_logger("migration_logger")

RULE = "=" * 65
DIRECTION_SLUGS = {
    MigrationDirection.TO_REMOTE: "local-to-remote",
    MigrationDirection.TO_LOCAL: "remote-to-local",
}
DIRECTION_TITLES = {
    MigrationDirection.TO_REMOTE: "Local to Remote",
    MigrationDirection.TO_LOCAL: "Remote to Local",
}


def summary_status(migrated_count: int, error_count: int) -> str:
    if error_count == 0:
        return "SUCCESS"
    return "PARTIAL SUCCESS" if migrated_count > 0 else "FAILED"


class MigrationLogger:
    """
    Write a migration run to ``migration-<direction>-<timestamp>.log``.

    Entries are also kept in memory so callers can return them with the
    result. Use as a context manager to close the file handle.
    """

    def __init__(self, direction: MigrationDirection, log_dir: str, now: Optional[datetime] = None):
        self.direction = direction
        self.log_dir = log_dir
        self.entries: List[Dict[str, Any]] = []
        os.makedirs(self.log_dir, exist_ok=True)

        started = now or datetime.now()
        filename = "migration-{}-{}.log".format(
            DIRECTION_SLUGS[direction], started.strftime("%d-%b-%Y-%H-%M-%S").lower()
        )
        self.log_file = os.path.join(self.log_dir, filename)
        self._handle = open(self.log_file, "a", encoding="utf-8")
        self._handle.write(
            f"{RULE}\nBotkit Migration Log\n"
            f"Direction: {DIRECTION_TITLES[direction]}\n"
            f"Started: {started:%Y-%m-%d %H:%M:%S}\n{RULE}\n\n"
        )
        self._handle.flush()

    def __enter__(self) -> "MigrationLogger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def log(self, level: str, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        self.entries.append({"level": level, "message": message, "context": context or {}})
        if self._handle is None:
            return
        entry = f"[{datetime.now():%Y-%m-%d %H:%M:%S}] [{level}] {message}"
        if context:
            entry += "\n  Context: " + json.dumps(context, indent=2, default=str)
        self._handle.write(entry + "\n")
        self._handle.flush()

    def info(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        self.log("INFO", message, context)

    def warning(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        logger.warning(message)
        self.log("WARNING", message, context)

    def error(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        logger.error(message)
        self.log("ERROR", message, context)

    def success(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        self.log("SUCCESS", message, context)

    def write_summary(self, migrated_count: int, error_count: int, duration: Optional[float] = None) -> None:
        if self._handle is None:
            return
        summary = (
            f"\n{RULE}\nMigration Summary\n{RULE}\n"
            f"Items Migrated: {migrated_count}\n"
            f"Errors: {error_count}\n"
            f"Status: {summary_status(migrated_count, error_count)}\n"
        )
        if duration is not None:
            summary += f"Duration: {duration:.2f}s\n"
        summary += f"Completed: {datetime.now():%Y-%m-%d %H:%M:%S}\n{RULE}\n"
        self._handle.write(summary)
        self._handle.flush()

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    @staticmethod
    def list_logs(log_dir: str) -> List[Dict[str, Any]]:
        """Migration logs in a directory, newest first."""
        if not os.path.isdir(log_dir):
            return []
        logs = []
        for name in os.listdir(log_dir):
            if not (name.startswith("migration-") and name.endswith(".log")):
                continue
            path = os.path.join(log_dir, name)
            stat = os.stat(path)
            logs.append({"filename": name, "path": path, "size": stat.st_size, "modified": stat.st_mtime})
        logs.sort(key=lambda item: item["modified"], reverse=True)
        return logs
