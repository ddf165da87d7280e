import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from taskpilot.core.state import RunState

DB_PATH = Path("data") / "taskpilot.sqlite3"


def _connect(db_path: Optional[Path] = None) -> sqlite3.Connection:
    path = Path(db_path or DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Optional[Path] = None) -> None:
    """
    Reason:
    - Ensure schema exists before saving runs.
    Benefit:
    - Zero-manual setup; works on any machine.
    """
    with _connect(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                created_ts REAL NOT NULL,
                task TEXT NOT NULL,
                phase TEXT NOT NULL,
                termination TEXT,
                iterations INTEGER NOT NULL,
                tool_calls INTEGER NOT NULL,
                error TEXT,
                result_json TEXT,
                state_json TEXT NOT NULL,
                total_tokens INTEGER,
                total_cost REAL
            )
            """
        )
        conn.commit()


def save_run(
    state: RunState,
    *,
    total_tokens: Optional[int] = None,
    total_cost: Optional[float] = None,
    db_path: Optional[Path] = None,
) -> None:
    """
    Reason:
    - Persist the final RunState for audit/replay/debug.
    Benefit:
    - You can compare runs across prompt versions and code changes.
    """
    init_db(db_path)
    state_data = state.model_dump(mode="json")
    with _connect(db_path) as conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO runs
            (run_id, created_ts, task, phase, termination, iterations, tool_calls,
             error, result_json, state_json, total_tokens, total_cost)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                state.id,
                state.created_at or time.time(),
                state.task,
                state_data["phase"],
                state_data["termination"],
                state.iterations,
                len(state.tool_calls),
                state.error,
                json.dumps(state_data["result"], ensure_ascii=False),
                json.dumps(state_data, ensure_ascii=False),
                total_tokens,
                total_cost,
            ),
        )
        conn.commit()


def list_runs(limit: int = 20, *, db_path: Optional[Path] = None) -> List[Dict[str, Any]]:
    init_db(db_path)
    with _connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT run_id, created_ts, task, phase, termination, iterations, tool_calls,
                   error, total_tokens, total_cost
            FROM runs
            ORDER BY created_ts DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
    return [dict(r) for r in rows]


def load_run(run_id: str, *, db_path: Optional[Path] = None) -> Optional[RunState]:
    init_db(db_path)
    with _connect(db_path) as conn:
        row = conn.execute(
            "SELECT state_json FROM runs WHERE run_id = ?", (run_id,)
        ).fetchone()
    if not row:
        return None
    return RunState.model_validate(json.loads(row["state_json"]))
