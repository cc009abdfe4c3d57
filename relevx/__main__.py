"""CLI entrypoint: python -m relevx {scheduler|tick|research|add-project|init-db|stats}."""

from __future__ import annotations

import asyncio
import json
import logging
import logging.handlers
import os
import sqlite3
import sys
from pathlib import Path

import yaml

from relevx.config import (
    get_db_path,
    get_scheduler_config,
    get_search_config,
    load_config,
    missing_required_settings,
)
from relevx.db import (
    get_connection,
    get_project,
    get_recent_delivery_logs,
    init_db,
    insert_project,
    update_project,
)
from relevx.models import Project, ProjectSettings, SearchParameters


def setup_logging(config: dict) -> None:
    """Configure logging with console + rotating file output."""
    root = logging.getLogger()
    root.setLevel(logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    # File handler (rotate at 5MB, keep 3 backups)
    log_dir = Path(get_db_path(config)).parent
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        str(log_dir / "relevx.log"), maxBytes=5 * 1024 * 1024, backupCount=3,
    )
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("trafilatura").setLevel(logging.WARNING)


logger = logging.getLogger("relevx")


def build_orchestrator(config: dict, conn: sqlite3.Connection):
    """Wire the research engine's collaborators once per process."""
    from relevx.extract import ContentExtractor
    from relevx.llm.research import ResearchLLM
    from relevx.pipeline import ResearchOrchestrator
    from relevx.process.cluster import TopicClusterer
    from relevx.search import build_search_provider
    from relevx.search.ratelimit import RateLimiter

    limiter = RateLimiter(get_search_config(config)["min_interval_seconds"])
    return ResearchOrchestrator(
        config,
        conn,
        llm=ResearchLLM(config),
        search=build_search_provider(config, rate_limiter=limiter),
        extractor=ContentExtractor(config),
        clusterer=TopicClusterer(config),
    )


def _open_db(config: dict) -> sqlite3.Connection:
    db_path = get_db_path(config)
    init_db(db_path)
    return get_connection(db_path)


def _require_settings(config: dict) -> None:
    missing = missing_required_settings(config)
    if missing:
        logger.error("Missing required configuration: %s", ", ".join(missing))
        sys.exit(1)


def cmd_init_db(config: dict, args: list[str]) -> None:
    """Initialize the SQLite database."""
    db_path = get_db_path(config)
    init_db(db_path)
    print(f"Database initialized at {db_path}")


async def cmd_scheduler(config: dict, args: list[str]) -> None:
    """Run the minute-tick scheduler until interrupted."""
    from relevx.scheduler import SchedulerController

    _require_settings(config)
    settings = get_scheduler_config(config)
    if not settings["enabled"]:
        logger.warning("Scheduler disabled (SCHEDULER_ENABLED=false), exiting")
        return

    conn = _open_db(config)
    try:
        controller = SchedulerController(config, conn, build_orchestrator(config, conn))
        logger.info(
            "Scheduler started (look-ahead %d min, run on startup: %s)",
            settings["check_window_minutes"], settings["run_on_startup"],
        )
        await controller.run_forever()
    finally:
        conn.close()


async def cmd_tick(config: dict, args: list[str]) -> None:
    """Run a single scheduler tick and print what it did."""
    from relevx.scheduler import SchedulerController

    _require_settings(config)
    conn = _open_db(config)
    try:
        controller = SchedulerController(config, conn, build_orchestrator(config, conn))
        print(await controller.tick())
    finally:
        conn.close()


async def cmd_research(config: dict, args: list[str]) -> None:
    """Force a research run for one project and release it immediately."""
    from relevx.scheduling import next_run_for

    if len(args) != 2:
        print("Usage: python -m relevx research <user_id> <project_id>")
        sys.exit(1)
    _require_settings(config)
    user_id, project_id = args

    conn = _open_db(config)
    try:
        result = await build_orchestrator(config, conn).run(
            user_id, project_id, delivery_status="success",
        )
        if not result.success:
            print(f"Research failed: {result.error}")
            sys.exit(1)

        project = get_project(conn, user_id, project_id)
        update_project(
            conn, user_id, project_id,
            status="active",
            last_error=None,
            prepared_delivery_log_id=None,
            last_run_at=result.completed_at,
            next_run_at=next_run_for(project, result.completed_at),
        )
        print(f"{len(result.relevant_results)} findings in {result.iterations_used} iterations")
        print(f"Delivery log: {result.delivery_log_id}\n")
        print(result.report.markdown if result.report else "")
    finally:
        conn.close()


def cmd_add_project(config: dict, args: list[str]) -> None:
    """Create a project from a YAML file and schedule its first run."""
    from relevx.scheduling import next_run_for

    if len(args) != 1:
        print("Usage: python -m relevx add-project <project.yaml>")
        sys.exit(1)

    with open(args[0]) as f:
        raw = yaml.safe_load(f) or {}

    project = Project(
        user_id=str(raw["user_id"]),
        title=raw["title"],
        description=raw["description"],
        frequency=raw.get("frequency", "daily"),
        delivery_time=str(raw.get("delivery_time", "09:00")),
        timezone=raw.get("timezone", "UTC"),
        day_of_week=raw.get("day_of_week"),
        day_of_month=raw.get("day_of_month"),
        search_parameters=SearchParameters(**raw.get("search_parameters", {})),
        settings=ProjectSettings(**raw.get("settings", {})),
    )
    project.next_run_at = next_run_for(project)

    conn = _open_db(config)
    try:
        project_id = insert_project(conn, project)
    finally:
        conn.close()
    print(f"Project {project_id} created, first run at {project.next_run_at.isoformat()}")


def cmd_stats(config: dict, args: list[str]) -> None:
    """Show recent delivery logs."""
    conn = _open_db(config)
    try:
        logs = get_recent_delivery_logs(conn, limit=10)
    finally:
        conn.close()

    if not logs:
        print("No research runs yet.")
        return

    header = f"{'Project':<34} {'Status':<9} {'Results':<8} {'Iter':<5} {'Cost':>8} {'Created'}"
    print(header)
    print("-" * 90)
    for row in logs:
        stats = json.loads(row["stats"])
        print(
            f"{row['project_id']:<34} {row['status']:<9} "
            f"{stats.get('included_results', 0):<8} "
            f"{stats.get('iterations_required', 0):<5} "
            f"${stats.get('estimated_cost_usd', 0.0):>7.3f} {row['created_at']}"
        )


COMMANDS = {
    "scheduler": cmd_scheduler,
    "tick": cmd_tick,
    "research": cmd_research,
    "add-project": cmd_add_project,
    "init-db": cmd_init_db,
    "stats": cmd_stats,
}


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in COMMANDS:
        available = ", ".join(COMMANDS)
        print(f"Usage: python -m relevx {{{available}}}")
        sys.exit(1)

    command = sys.argv[1]
    config = load_config(os.environ.get("CONFIG_PATH", "config.yaml"))
    setup_logging(config)
    handler = COMMANDS[command]

    if asyncio.iscoroutinefunction(handler):
        try:
            asyncio.run(handler(config, sys.argv[2:]))
        except KeyboardInterrupt:
            logger.info("Interrupted")
    else:
        handler(config, sys.argv[2:])


if __name__ == "__main__":
    main()
