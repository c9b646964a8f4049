import time
from typing import Callable, Optional

from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn, TimeElapsedColumn

from ..models import Step, WorkStatus


def create_progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
    )


def watch_work(
    get_status: Callable[[], WorkStatus],
    is_running: Callable[[], bool],
    poll_seconds: float = 1.0,
    timeout: Optional[float] = None,
) -> WorkStatus:
    """Show a chapter bar for the running batch until it stops. Returns the final status."""
    status = get_status()
    deadline = time.time() + timeout if timeout is not None else None

    with create_progress() as progress:
        total = (status.batch_end - status.batch_start + 1) if status.batch_start else None
        task_id = progress.add_task(status.step.value, total=total)

        while is_running():
            status = get_status()
            if status.batch_start:
                progress.update(
                    task_id,
                    description=f"Chapters {status.batch_start}-{status.batch_end}",
                    total=status.batch_end - status.batch_start + 1,
                    completed=status.chapters_completed_in_batch or 0,
                )
            if deadline is not None and time.time() > deadline:
                break
            time.sleep(poll_seconds)

        status = get_status()
        progress.update(task_id, description=status.step.value)
        if status.step.is_awaiting or status.step is Step.COMPLETE:
            progress.update(task_id, completed=progress.tasks[0].total or 0)

    return status
