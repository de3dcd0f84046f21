"""Run cancellation shared by WorkflowContext.cancel() and Client.cancel()."""

import logging

from pyresume.models import RunStatus
from pyresume.scheduler.base import DurableScheduler
from pyresume.storage.base import ExecutionLog

logger = logging.getLogger(__name__)


async def cancel_run(store: ExecutionLog, scheduler: DurableScheduler, run_id: str) -> bool:
    """
    Move a RUNNING or WAITING run to CANCELED and drop its scheduled messages.

    Messages already in flight still arrive; the engine answers them with a
    no-op because the run is terminal.

    Returns:
        True if this call canceled the run, False if it was not cancelable
    """
    moved = await store.transition_run(
        run_id, (RunStatus.RUNNING, RunStatus.WAITING), RunStatus.CANCELED
    )
    if not moved:
        logger.info(f"Run {run_id} is not cancelable")
        return False
    dropped = await scheduler.cancel(run_id)
    logger.info(f"Canceled run {run_id} ({dropped} scheduled message(s) dropped)")
    return True
