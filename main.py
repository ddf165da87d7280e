import asyncio

from taskpilot.config import load_config
from taskpilot.infra.storage import save_run
from taskpilot.llm.client import OpenAIClient
from taskpilot.tools.runs import run_task


def main():
    cfg = load_config()
    client = OpenAIClient(cfg)

    task = (
        "Open https://example.com, read the page and tell me in one sentence "
        "what the page says it is for."
    )

    state = asyncio.run(run_task(cfg, task, max_iterations=5, client=client))
    save_run(
        state,
        total_tokens=client.total_tokens,
        total_cost=client.total_cost,
        db_path=cfg.db_path,
    )

    print(state.phase.value, state.result if state.result is not None else state.error)


if __name__ == "__main__":
    main()
