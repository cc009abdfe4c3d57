"""Minute-tick controller: pre-runs, retries, escalation and delivery release."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from datetime import datetime, timedelta

from relevx import db
from relevx.config import get_scheduler_config
from relevx.models import AdminNotification, Project, utcnow
from relevx.pipeline import ResearchOrchestrator
from relevx.scheduling import next_run_for

logger = logging.getLogger(__name__)

# A retry that fails after an earlier failure is the second in a row
ESCALATION_RETRY_COUNT = 2


class SchedulerController:
    """Drives project lifecycle from the clock.

    Each tick runs two jobs concurrently. The research job pre-runs
    projects due inside the look-ahead window (result held as ``pending``)
    and retries projects already past due with nothing prepared (result
    released at once). The delivery job releases prepared results whose
    delivery time has arrived.
    """

    def __init__(self, config: dict, conn: sqlite3.Connection, orchestrator: ResearchOrchestrator):
        self.config = config
        self.conn = conn
        self.orchestrator = orchestrator
        self.settings = get_scheduler_config(config)

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.settings["check_window_minutes"])

    def select_research_candidates(self, now: datetime) -> list[tuple[Project, bool]]:
        """Active projects to research now, each paired with ``is_retry``."""
        window_end = now + self.window
        candidates = []
        for project in db.get_projects_by_status(self.conn, "active"):
            if project.prepared_delivery_log_id or project.next_run_at is None:
                continue
            if project.next_run_at <= now:
                candidates.append((project, True))
            elif project.next_run_at <= window_end and not project.last_error:
                # A failed pre-run waits for its due time and retries from there
                candidates.append((project, False))
        return candidates

    async def run_research_job(self, now: datetime | None = None) -> dict:
        now = now or utcnow()
        candidates = self.select_research_candidates(now)
        if not candidates:
            return {"pre_runs": 0, "retries": 0, "succeeded": 0, "failed": 0}

        is_retry = {project.id: retry for project, retry in candidates}
        claimed = db.mark_projects_running(self.conn, [p for p, _ in candidates], now)
        retries = sum(1 for p in claimed if is_retry[p.id])
        summary = {
            "pre_runs": len(claimed) - retries,
            "retries": retries,
            "succeeded": 0,
            "failed": 0,
        }
        logger.info(
            "Research job: %d pre-run, %d retry candidates",
            summary["pre_runs"], retries,
        )
        for project in claimed:
            try:
                ok = await self._research_one(project, is_retry[project.id], now)
            except Exception as exc:
                logger.exception("Scheduler error while researching %s", project.id)
                db.update_project(
                    self.conn, project.user_id, project.id,
                    status="active", last_error=f"{type(exc).__name__}: {exc}",
                )
                ok = False
            summary["succeeded" if ok else "failed"] += 1
        return summary

    async def _research_one(self, project: Project, is_retry: bool, now: datetime) -> bool:
        result = await self.orchestrator.run(
            project.user_id,
            project.id,
            delivery_status="success" if is_retry else "pending",
        )

        if result.success:
            if is_retry:
                db.update_project(
                    self.conn, project.user_id, project.id,
                    status="active",
                    prepared_delivery_log_id=None,
                    last_run_at=result.completed_at,
                    next_run_at=next_run_for(project, result.completed_at),
                    last_error=None,
                )
                logger.info("Retry for '%s' delivered immediately", project.title)
            else:
                db.update_project(
                    self.conn, project.user_id, project.id,
                    status="active",
                    prepared_delivery_log_id=result.delivery_log_id,
                    last_error=None,
                )
                logger.info(
                    "Pre-run for '%s' prepared, delivering at %s",
                    project.title, project.next_run_at,
                )
            return True

        if is_retry and project.last_error:
            self._escalate(project, result.error or "Unknown error", now)
        else:
            db.update_project(
                self.conn, project.user_id, project.id,
                status="active", last_error=result.error,
            )
            logger.warning(
                "Research for '%s' failed, will retry when due: %s",
                project.title, result.error,
            )
        return False

    def _escalate(self, project: Project, error: str, now: datetime) -> None:
        """Second failure in a row: alert operators and push the schedule forward."""
        next_run_at = next_run_for(project, now)
        notification = AdminNotification(
            project_id=project.id,
            user_id=project.user_id,
            project_title=project.title,
            error_message=error,
            retry_count=ESCALATION_RETRY_COUNT,
            occurred_at=now,
        )
        db.escalate_failure(self.conn, notification, next_run_at)
        logger.error(
            "Project '%s' failed twice in a row; admin notified, next run %s: %s",
            project.title, next_run_at.isoformat(), error,
        )

    async def run_delivery_job(self, now: datetime | None = None) -> int:
        """Release prepared results whose delivery time has arrived."""
        now = now or utcnow()
        released = 0
        for project in db.get_projects_by_status(self.conn, "active"):
            log_id = project.prepared_delivery_log_id
            if not log_id or project.next_run_at is None or project.next_run_at > now:
                continue
            next_run_at = next_run_for(project, now)
            db.release_delivery(self.conn, project, log_id, now, next_run_at)
            released += 1
            logger.info(
                "Delivered '%s' (log %s), next run %s",
                project.title, log_id, next_run_at.isoformat(),
            )
        return released

    async def tick(self, now: datetime | None = None) -> dict:
        """Run the research and delivery jobs for one instant."""
        now = now or utcnow()
        research, delivered = await asyncio.gather(
            self.run_research_job(now), self.run_delivery_job(now),
        )
        return {**research, "delivered": delivered}

    def recover_stale_runs(self) -> int:
        """Return projects left ``running`` by a killed process to ``active``."""
        stale = db.get_projects_by_status(self.conn, "running")
        for project in stale:
            db.update_project(self.conn, project.user_id, project.id, status="active")
            logger.warning("Recovered project '%s' stuck in running", project.title)
        return len(stale)

    async def run_forever(self) -> None:
        """Tick at each minute boundary until cancelled."""
        interval = self.settings["tick_seconds"]
        self.recover_stale_runs()
        if self.settings["run_on_startup"]:
            logger.info("Running startup tick")
            await self._safe_tick()

        while True:
            await asyncio.sleep(interval - (time.time() % interval))
            await self._safe_tick()

    async def _safe_tick(self) -> None:
        try:
            result = await self.tick()
        except Exception:
            logger.exception("Scheduler tick failed")
            return
        if any(result.values()):
            logger.info("Tick: %s", result)
