"""
Notification gateway port: fire-and-forget.

Delivery (push / SMS / email) happens in the notification workers; the engine
only publishes. A failure here is logged and swallowed so it can never fail
the rescue operation that triggered it.
"""
import logging
from typing import Any, Optional

from rescue_dispatch.services.jobs import JobScheduler, JobType

logger = logging.getLogger(__name__)


class NotificationEvent:
    RESCUE_CREATED = "rescue_created"
    RESCUE_OFFERED = "rescue_offered"
    RESCUE_ACCEPTED = "rescue_accepted"
    RESCUE_STATUS_CHANGED = "rescue_status_changed"
    RESCUE_CANCELLED = "rescue_cancelled"
    RESCUE_COMPLETED = "rescue_completed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"


class NotificationGateway:
    def __init__(self, scheduler: JobScheduler):
        self.scheduler = scheduler

    async def notify(self, user_id: Optional[str], event_type: str, payload: dict[str, Any]) -> None:
        if not user_id:
            return
        try:
            await self.scheduler.enqueue(
                JobType.NOTIFICATION,
                {"user_id": user_id, "event": event_type, "data": payload},
            )
        except Exception as exc:
            logger.error("Notification %s for user=%s dropped: %s", event_type, user_id, exc)
