import uuid


def new_run_id() -> str:
    """
    Reason:
    - A single identifier ties together every event emitted by one run.
    Benefit:
    - Grep one id and see the whole plan -> execute -> evaluate story.
    """
    return uuid.uuid4().hex


def new_call_id() -> str:
    return uuid.uuid4().hex
