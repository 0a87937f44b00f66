"""Shared utilities for Celery worker tasks."""

import logging

from sqlalchemy.orm import Session

from app.models.provisioning_log import LogStatus, ProvisioningLog


def log_entry(
    server_id: int,
    step: str,
    status: LogStatus,
    message: str | None = None,
) -> ProvisioningLog:
    return ProvisioningLog(
        server_id=server_id,
        step=step,
        status=status.value,
        message=message,
    )


def append_log(
    db: Session,
    server_id: int,
    step: str,
    status: LogStatus,
    message: str | None = None,
) -> ProvisioningLog:
    """Insert one provisioning-log row and commit.

    Log rows are append-only; a step moving from running to success is two
    rows, and readers collapse them with ``latest_per_step``.
    """
    entry = log_entry(server_id, step, status, message)
    db.add(entry)
    db.commit()
    return entry


class TaskLogger:
    """Context-aware logger for Celery tasks.

    Prefixes all log messages with [task_id] and the server id for easy
    correlation in logs.

    Usage:
        tlog = TaskLogger(task_id="abc123", server_id=5)
        tlog.info("Creating machine")
        tlog.error("Create failed: %s", err)
    """

    def __init__(self, task_id: str | None, *, server_id: int | None = None):
        self.task_id = task_id or "local"
        self._logger = logging.getLogger("app.workers")

        parts = [f"task={self.task_id[:12]}"]
        if server_id is not None:
            parts.append(f"server={server_id}")
        self._prefix = "[" + " ".join(parts) + "]"

    def info(self, msg: str, *args) -> None:
        self._logger.info(f"{self._prefix} {msg}", *args)

    def warning(self, msg: str, *args) -> None:
        self._logger.warning(f"{self._prefix} {msg}", *args)

    def error(self, msg: str, *args) -> None:
        self._logger.error(f"{self._prefix} {msg}", *args)

    def debug(self, msg: str, *args) -> None:
        self._logger.debug(f"{self._prefix} {msg}", *args)
