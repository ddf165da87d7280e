import argparse
import asyncio
import datetime as dt
import json
import sys
from typing import List, Optional

from taskpilot.config import TaskpilotConfig, load_config
from taskpilot.core.actions import ActionRegistry
from taskpilot.core.orchestrator import Orchestrator
from taskpilot.core.state import Phase, RunState
from taskpilot.infra.storage import list_runs, load_run, save_run
from taskpilot.llm.client import OpenAIClient
from taskpilot.tools.web_tools import WebSession, register_web_actions


def format_ts(ts: Optional[float]) -> str:
    """Convert unix timestamp -> human readable local time."""
    if not ts:
        return "UNKNOWN_TIME"
    return dt.datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskpilot")
    sub = parser.add_subparsers(dest="cmd", required=True)

    # run
    p_run = sub.add_parser("run", help="Run a task with the web actions and save the result")
    p_run.add_argument("task")
    p_run.add_argument("--max-iterations", type=int, default=None)
    p_run.add_argument("--system-prompt", type=str, default=None)
    p_run.add_argument("--no-save", action="store_true", help="Do not persist the run")

    # list
    p_list = sub.add_parser("list", help="List recent runs")
    p_list.add_argument("--limit", type=int, default=20)

    # show
    p_show = sub.add_parser("show", help="Show a run as JSON")
    p_show.add_argument("run_id")

    return parser


async def run_task(
    cfg: TaskpilotConfig,
    task: str,
    *,
    max_iterations: Optional[int] = None,
    system_prompt: Optional[str] = None,
    client: Optional[OpenAIClient] = None,
) -> RunState:
    client = client or OpenAIClient(cfg)
    session = WebSession(timeout=cfg.http_timeout)
    registry = register_web_actions(ActionRegistry(), session)

    orchestrator = Orchestrator.from_config(
        cfg, client, registry, context_provider=session.context
    )
    return await orchestrator.run(
        task, max_iterations=max_iterations, system_prompt=system_prompt
    )


def cmd_run(cfg: TaskpilotConfig, args: argparse.Namespace) -> int:
    client = OpenAIClient(cfg)
    state = asyncio.run(
        run_task(
            cfg,
            args.task,
            max_iterations=args.max_iterations,
            system_prompt=args.system_prompt,
            client=client,
        )
    )
    if not args.no_save:
        save_run(
            state,
            total_tokens=client.total_tokens,
            total_cost=client.total_cost,
            db_path=cfg.db_path,
        )
    print(json.dumps(state.model_dump(mode="json"), indent=2, ensure_ascii=False))
    return 0 if state.phase is Phase.COMPLETED else 1


def cmd_list(cfg: TaskpilotConfig, args: argparse.Namespace) -> int:
    runs = list_runs(limit=args.limit, db_path=cfg.db_path)
    if not runs:
        print("(no runs)")
        return 0
    for r in runs:
        print(
            f"{r['run_id']}  {format_ts(r['created_ts'])}  {r['phase']:<9}  "
            f"iters={r['iterations']} calls={r['tool_calls']}  {str(r['task'])[:60]!r}"
        )
    return 0


def cmd_show(cfg: TaskpilotConfig, args: argparse.Namespace) -> int:
    state = load_run(args.run_id, db_path=cfg.db_path)
    if state is None:
        print(f"Run not found: {args.run_id}", file=sys.stderr)
        return 1
    print(json.dumps(state.model_dump(mode="json"), indent=2, ensure_ascii=False))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = load_config()

    if args.cmd == "run":
        return cmd_run(cfg, args)
    if args.cmd == "list":
        return cmd_list(cfg, args)
    if args.cmd == "show":
        return cmd_show(cfg, args)
    raise SystemExit(f"Unknown command: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
