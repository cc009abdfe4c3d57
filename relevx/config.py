"""Load and validate configuration from YAML with env var substitution."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; ResearchBot/1.0; +https://example.com/bot)"

# Per-task sampling defaults; report tasks favour determinism, query generation diversity
TASK_TEMPERATURES = {
    "query_generation": 0.8,
    "search_filtering": 0.2,
    "relevancy_analysis": 0.3,
    "report_compilation": 0.3,
    "clustered_report_compilation": 0.3,
    "report_summary": 0.2,
}

TASK_MAX_TOKENS = {
    "query_generation": 1000,
    "search_filtering": 2000,
    "relevancy_analysis": 4000,
    "report_compilation": 8000,
    "clustered_report_compilation": 8000,
    "report_summary": 500,
}


def _load_dotenv(path: str | Path = ".env") -> None:
    """Load a .env file into os.environ (without overwriting existing vars)."""
    env_path = Path(path)
    if not env_path.is_file():
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            if key and key not in os.environ:
                os.environ[key] = value


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${ENV_VAR} patterns in config values."""
    if isinstance(value, str):
        pattern = re.compile(r"\$\{([^}]+)\}")
        match = pattern.search(value)
        if match:
            # A value that is exactly one reference resolves to the raw env value
            if match.group(0) == value:
                return os.environ.get(match.group(1), "")
            return pattern.sub(lambda m: os.environ.get(m.group(1), ""), value)
        return value
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


def load_config(path: str | Path = "config.yaml") -> dict[str, Any]:
    """Load config from YAML file and resolve environment variables."""
    _load_dotenv()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return _resolve_env_vars(raw)


def get_llm_task_config(config: dict, task: str) -> dict:
    """Get provider settings, model and sampling parameters for an LLM task."""
    llm_cfg = config.get("llm", {})
    task_cfg = llm_cfg.get("tasks", {}).get(task, {})
    provider_name = task_cfg.get("provider", llm_cfg.get("default_provider", "openai"))
    model_override = task_cfg.get("model")

    providers = llm_cfg.get("providers", {})
    provider_cfg = providers.get(provider_name, {})

    return {
        "provider_name": provider_name,
        "provider_type": provider_cfg.get("type", "openai_compatible"),
        "api_key": provider_cfg.get("api_key", ""),
        "base_url": provider_cfg.get("base_url", ""),
        "model": model_override or provider_cfg.get("default_model", ""),
        "temperature": task_cfg.get("temperature", TASK_TEMPERATURES.get(task, 0.3)),
        "max_tokens": task_cfg.get("max_tokens", TASK_MAX_TOKENS.get(task, 2000)),
        "json_mode": task_cfg.get("json_mode", provider_cfg.get("json_mode", True)),
        "max_retries": provider_cfg.get("max_retries", 3),
        "timeout": provider_cfg.get("timeout", 120),
    }


def get_llm_retry_config(config: dict) -> dict:
    """Retry policy applied around each LLM task (parse failures included)."""
    cfg = config.get("llm", {}).get("task_retry", {})
    return {
        "attempts": cfg.get("attempts", 3),
        "base_delay": cfg.get("base_delay", 1.0),
        "max_delay": cfg.get("max_delay", 10.0),
    }


def get_search_config(config: dict) -> dict:
    """Get search provider settings with defaults applied."""
    cfg = config.get("search", {})
    return {
        "provider": cfg.get("provider", "brave"),
        "api_key": cfg.get("api_key", ""),
        "min_interval_seconds": cfg.get("min_interval_seconds", 2.0),
        "max_retries": cfg.get("max_retries", 2),
        "base_delay": cfg.get("base_delay", 1.0),
        "max_delay": cfg.get("max_delay", 10.0),
        "rate_limit_base_delay": cfg.get("rate_limit_base_delay", 2.0),
        "rate_limit_max_delay": cfg.get("rate_limit_max_delay", 15.0),
        "rate_limit_cooldown": cfg.get("rate_limit_cooldown", 3.0),
        "timeout": cfg.get("timeout", 30),
        "results_per_query": cfg.get("results_per_query", 5),
        "safesearch": cfg.get("safesearch", "moderate"),
    }


def get_extraction_config(config: dict) -> dict:
    """Get content extraction settings with defaults applied."""
    cfg = config.get("extraction", {})
    return {
        "timeout": cfg.get("timeout", 10.0),
        "concurrency": cfg.get("concurrency", 5),
        "min_snippet_length": cfg.get("min_snippet_length", 200),
        "max_snippet_length": cfg.get("max_snippet_length", 500),
        "max_retries": cfg.get("max_retries", 1),
        "retry_delay": cfg.get("retry_delay", 1.0),
        "user_agent": cfg.get("user_agent", DEFAULT_USER_AGENT),
        "full_content_min_chars": cfg.get("full_content_min_chars", 1000),
    }


def get_research_config(config: dict) -> dict:
    """Get orchestrator loop limits."""
    cfg = config.get("research", {})
    return {
        "max_iterations": cfg.get("max_iterations", 3),
        "max_candidates": cfg.get("max_candidates", 25),
        "relevancy_batch_size": cfg.get("relevancy_batch_size", 10),
        "queries_per_iteration": cfg.get("queries_per_iteration", 5),
    }


def get_clustering_config(config: dict) -> dict:
    """Get topic clustering settings."""
    cfg = config.get("clustering", {})
    return {
        "enabled": cfg.get("enabled", True),
        "similarity_threshold": cfg.get("similarity_threshold", 0.85),
        "model": cfg.get("model", "minishlab/potion-base-8M"),
    }


def get_scheduler_config(config: dict) -> dict:
    """Scheduler settings; environment variables win over the YAML section."""
    cfg = config.get("scheduler", {})

    window = os.environ.get("SCHEDULER_CHECK_WINDOW_MINUTES")
    try:
        window_minutes = int(window) if window else int(cfg.get("check_window_minutes", 15))
    except ValueError:
        window_minutes = 15

    enabled_env = os.environ.get("SCHEDULER_ENABLED")
    if enabled_env is not None:
        enabled = enabled_env.lower() != "false"
    else:
        enabled = bool(cfg.get("enabled", True))

    startup_env = os.environ.get("RUN_ON_STARTUP")
    if startup_env is not None:
        run_on_startup = startup_env.lower() != "false"
    else:
        run_on_startup = bool(cfg.get("run_on_startup", True))

    return {
        "check_window_minutes": window_minutes,
        "enabled": enabled,
        "run_on_startup": run_on_startup,
        "tick_seconds": cfg.get("tick_seconds", 60),
    }


def missing_required_settings(config: dict) -> list[str]:
    """Return the names of credentials the scheduler cannot start without."""
    missing = []
    if not get_search_config(config)["api_key"]:
        missing.append("search.api_key")

    tasks = config.get("llm", {}).get("tasks", {}) or {"query_generation": {}}
    seen = set()
    for task in tasks:
        task_cfg = get_llm_task_config(config, task)
        name = task_cfg["provider_name"]
        if name in seen:
            continue
        seen.add(name)
        # Local OpenAI-compatible servers (Ollama, vLLM) run without a key
        local = task_cfg["provider_type"] == "openai_compatible" and task_cfg["base_url"] and (
            "localhost" in task_cfg["base_url"] or "127.0.0.1" in task_cfg["base_url"]
        )
        if not task_cfg["api_key"] and not local:
            missing.append(f"llm.providers.{name}.api_key")
    return missing


def get_db_path(config: dict) -> str:
    """Get database path from config."""
    return config.get("database", {}).get("path", "data/relevx.db")
