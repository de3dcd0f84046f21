"""
Wait/notify matching.

notify() claims every PENDING waiter of an event with a test-and-set
(PENDING -> NOTIFIED) and publishes an immediate wake-up for each claimed
run. The wake-up delivery completes the waiting step with the event data.

A timeout delivery races for the same waiter with PENDING -> TIMED_OUT.
Exactly one of them wins; the loser changes nothing.
"""

import logging
from typing import Any

from uuid_extensions import uuid7

from pyresume.core.errors import SchedulerError
from pyresume.models import NotifyResult, WaiterStatus
from pyresume.protocol import Delivery, DeliveryType, Envelope, continuation_headers
from pyresume.scheduler.base import DurableScheduler, Message
from pyresume.storage.base import ExecutionLog

logger = logging.getLogger(__name__)


async def notify(
    store: ExecutionLog,
    scheduler: DurableScheduler,
    event_id: str,
    event_data: Any = None,
) -> list[NotifyResult]:
    """
    Notify every run waiting on ``event_id``.

    Waiters of terminal runs are skipped. A waiter whose wake-up cannot be
    published is put back to PENDING so that a later notify or its timeout
    can still resolve it, and the error is reported in its NotifyResult.

    Args:
        store: Durable store holding the waiters
        scheduler: Scheduler used to publish the wake-ups
        event_id: Event identifier
        event_data: JSON value handed to each waiting step

    Returns:
        One NotifyResult per matched waiter, oldest waiter first. Empty if
        nothing was waiting.
    """
    results: list[NotifyResult] = []
    for waiter in await store.find_waiters(event_id):
        run = await store.get_run(waiter.run_id)
        if run is None or run.status.is_terminal:
            logger.debug(f"Skipping waiter of finished run {waiter.run_id} for event {event_id}")
            continue

        claimed = await store.transition_waiter(
            waiter.run_id,
            event_id,
            waiter.step_name,
            waiter.occurrence,
            WaiterStatus.PENDING,
            WaiterStatus.NOTIFIED,
            event_data=event_data,
        )
        if not claimed:
            # timeout (or a concurrent notify) got there first
            continue

        waiter.status = WaiterStatus.NOTIFIED
        waiter.event_data = event_data
        envelope = Envelope(
            run_id=waiter.run_id,
            token=str(uuid7()),
            delivery=Delivery(
                DeliveryType.NOTIFY,
                step_name=waiter.step_name,
                occurrence=waiter.occurrence,
                event_id=event_id,
            ),
        )
        try:
            message_id = await scheduler.publish(
                Message(
                    url=waiter.url,
                    body=envelope.to_bytes(),
                    headers=continuation_headers(waiter.run_id),
                    run_id=waiter.run_id,
                )
            )
        except SchedulerError as e:
            logger.error(f"Wake-up for run {waiter.run_id} on event {event_id} not published: {e}")
            await store.transition_waiter(
                waiter.run_id,
                event_id,
                waiter.step_name,
                waiter.occurrence,
                WaiterStatus.NOTIFIED,
                WaiterStatus.PENDING,
            )
            results.append(NotifyResult(waiter=waiter, message_id=None, error=str(e)))
            continue

        logger.info(f"Notified run {waiter.run_id} of event {event_id} ({message_id})")
        results.append(NotifyResult(waiter=waiter, message_id=message_id))
    return results
