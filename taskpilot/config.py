from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os


@dataclass(frozen=True)
class TaskpilotConfig:
    # LLM
    openai_api_key: str | None
    openai_base_url: str | None
    model: str
    llm_max_attempts: int
    llm_backoff_seconds: float

    # Loop
    max_iterations: int
    history_window: int
    planner_temperature: float
    evaluator_temperature: float

    # Storage
    db_path: Path

    # Web actions
    http_timeout: float


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)).strip() or str(default))


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)).strip() or str(default))


def load_config() -> TaskpilotConfig:
    root = Path(os.getenv("TASKPILOT_ROOT", str(Path.cwd())))

    max_iterations = _int_env("TASKPILOT_MAX_ITERATIONS", 50)
    if max_iterations < 1:
        raise RuntimeError("TASKPILOT_MAX_ITERATIONS must be at least 1")

    history_window = _int_env("TASKPILOT_HISTORY_WINDOW", 10)
    if history_window < 0:
        raise RuntimeError("TASKPILOT_HISTORY_WINDOW cannot be negative")

    return TaskpilotConfig(
        openai_api_key=os.getenv("OPENAI_API_KEY", "").strip() or None,
        openai_base_url=os.getenv("OPENAI_BASE_URL", "").strip() or None,
        model=os.getenv("TASKPILOT_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini",
        llm_max_attempts=max(1, _int_env("TASKPILOT_LLM_MAX_ATTEMPTS", 3)),
        llm_backoff_seconds=_float_env("TASKPILOT_LLM_BACKOFF_SECONDS", 1.0),

        max_iterations=max_iterations,
        history_window=history_window,
        planner_temperature=_float_env("TASKPILOT_PLANNER_TEMPERATURE", 0.7),
        evaluator_temperature=_float_env("TASKPILOT_EVALUATOR_TEMPERATURE", 0.3),

        db_path=Path(
            os.getenv("TASKPILOT_DB_PATH", str(root / "data" / "taskpilot.sqlite3"))
        ),

        http_timeout=_float_env("TASKPILOT_HTTP_TIMEOUT", 15.0),
    )
