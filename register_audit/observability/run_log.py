"""
Per-run audit log.
Collects stage-level entries while a run executes and persists them, with a
summary, under logs/{run_id}.json once the run settles.
"""

import time
from typing import Any, Optional

import structlog

from register_audit.models.enums import ExecutionMode, LogLevel, RunStatus, StageName
from register_audit.schemas.contracts import RunLog, RunLogEntry, utcnow
from register_audit.storage.repository import RunRepository

logger = structlog.get_logger(__name__)


class RunLogger:
    """Track what happened in one run, stage by stage."""

    def __init__(
        self,
        repository: RunRepository,
        run_id: str,
        execution_mode: Optional[ExecutionMode] = None,
        previous: Optional[RunLog] = None,
    ):
        self.repository = repository
        self.run_id = run_id
        self._started = time.monotonic()
        # A resumed run keeps appending to the log of its first execution
        self.run_log = previous or RunLog(run_id=run_id, execution_mode=execution_mode)
        self.run_log.finished_at = None
        self._stage_started: dict[str, float] = {}

    def log(
        self,
        level: LogLevel,
        title: str,
        message: str = "",
        stage: Optional[StageName] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        self.run_log.entries.append(RunLogEntry(
            stage=stage,
            level=level,
            title=title,
            message=message,
            data=data or {},
        ))
        if level == LogLevel.WARNING:
            self.run_log.summary.warnings.append(f"{title}: {message}" if message else title)
        elif level == LogLevel.ERROR:
            self.run_log.summary.errors.append(f"{title}: {message}" if message else title)

    def info(self, title: str, message: str = "", **kwargs) -> None:
        self.log(LogLevel.INFO, title, message, **kwargs)

    def success(self, title: str, message: str = "", **kwargs) -> None:
        self.log(LogLevel.SUCCESS, title, message, **kwargs)

    def warning(self, title: str, message: str = "", **kwargs) -> None:
        self.log(LogLevel.WARNING, title, message, **kwargs)

    def error(self, title: str, message: str = "", **kwargs) -> None:
        self.log(LogLevel.ERROR, title, message, **kwargs)

    def stage_started(self, stage: StageName) -> None:
        self._stage_started[stage.value] = time.monotonic()
        self.info(f"Stage {stage.value} started", stage=stage)

    def stage_finished(self, stage: StageName, summary: str) -> float:
        """Record completion and return the stage duration in seconds."""
        started = self._stage_started.pop(stage.value, None)
        duration = time.monotonic() - started if started is not None else 0.0
        self.success(
            f"Stage {stage.value} completed",
            summary,
            stage=stage,
            data={"duration_seconds": round(duration, 3)},
        )
        if stage.value not in self.run_log.summary.stages_completed:
            self.run_log.summary.stages_completed.append(stage.value)
        return duration

    def finding(self, text: str) -> None:
        self.run_log.summary.key_findings.append(text)

    async def finish(self, status: RunStatus) -> RunLog:
        """Stamp the final status and persist the log."""
        self.run_log.final_status = status
        self.run_log.finished_at = utcnow()
        self.run_log.summary.duration_seconds = round(
            self.run_log.summary.duration_seconds + time.monotonic() - self._started, 3
        )
        await self.repository.save_run_log(self.run_log)
        logger.info(
            "run_log_saved",
            run_id=self.run_id,
            status=status.value,
            entries=len(self.run_log.entries),
        )
        return self.run_log
