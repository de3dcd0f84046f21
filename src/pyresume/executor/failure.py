"""
Failure Handler.

State machine per failed run:
    RUNNING/WAITING -> FAILED_PENDING_CALLBACK -> FAILED

On entering FAILED_PENDING_CALLBACK the FailureContext is recorded as the
run's error. Then, in order of precedence:
    1. the configured failure_function is awaited in-process
    2. one message with the FailureContext is published to failure_url
    3. nothing: the run is simply FAILED and queryable
If (1) raises or (2) cannot be published, the run stays
FAILED_PENDING_CALLBACK and the invocation answers 500, so the scheduler
redelivers it and the handler runs again.
"""

import inspect
import json
import logging

from pyresume.core.codec import encode_value
from pyresume.core.config import WorkflowConfig
from pyresume.core.errors import FailureHandlerError
from pyresume.models import FailureContext, RunStatus, WorkflowRun
from pyresume.scheduler.base import DurableScheduler, Message
from pyresume.storage.base import ExecutionLog

logger = logging.getLogger(__name__)

_CAN_FAIL = (RunStatus.RUNNING, RunStatus.WAITING, RunStatus.FAILED_PENDING_CALLBACK)


class FailureHandler:
    """Routes a failed run to its failure function or failure URL."""

    def __init__(self, store: ExecutionLog, scheduler: DurableScheduler, config: WorkflowConfig):
        self._store = store
        self._scheduler = scheduler
        self._config = config

    async def handle(self, run: WorkflowRun, failure: FailureContext) -> bool:
        """
        Run failure handling for ``run``.

        The failure function's outcome decides the final status: returning
        ends the run FAILED with the value stored as ``failure_response``
        (whatever it contains), raising keeps it FAILED_PENDING_CALLBACK until
        a redelivery succeeds.

        Returns:
            True if the run ended FAILED, False if it could not enter failure
            handling (it was canceled or already finished)

        Raises:
            FailureHandlerError: If the failure function raised
            SchedulerError: If the failure URL message could not be published
        """
        entered = await self._store.transition_run(
            run.run_id, _CAN_FAIL, RunStatus.FAILED_PENDING_CALLBACK, error=failure.to_json()
        )
        if not entered:
            logger.warning(f"Run {run.run_id} is no longer active, skipping failure handling")
            return False

        logger.error(f"Run {run.run_id} failed: {failure}")
        fields = {}
        if self._config.failure_function is not None:
            try:
                response = self._config.failure_function(run, failure)
                if inspect.isawaitable(response):
                    response = await response
                fields["failure_response"] = encode_value(response)
            except Exception as e:
                logger.exception(f"Failure function for run {run.run_id} raised")
                raise FailureHandlerError(
                    f"Failure function for run {run.run_id} raised: {e}"
                ) from e
        elif self._config.failure_url:
            payload = failure.to_dict()
            payload["workflowRunId"] = run.run_id
            payload["stepName"] = failure.step_name
            message_id = await self._scheduler.publish(
                Message(
                    url=self._config.failure_url,
                    body=json.dumps(payload).encode("utf-8"),
                    headers={"Content-Type": "application/json"},
                )
            )
            logger.info(
                f"Published failure of run {run.run_id} to {self._config.failure_url} ({message_id})"
            )

        await self._store.transition_run(
            run.run_id, (RunStatus.FAILED_PENDING_CALLBACK,), RunStatus.FAILED, **fields
        )
        return True
