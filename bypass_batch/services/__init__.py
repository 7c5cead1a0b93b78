"""bypass_batch.services -- Threaded loops driving the kernel."""

from bypass_batch.services.delivery_recovery import DeliveryRecovery
from bypass_batch.services.notification_dispatcher import NotificationDispatcher
from bypass_batch.services.polling import PollingWorker
from bypass_batch.services.retention_sweeper import RetentionSweeper
from bypass_batch.services.timeout_scheduler import TimeoutScheduler

__all__ = [
    "DeliveryRecovery",
    "NotificationDispatcher",
    "PollingWorker",
    "RetentionSweeper",
    "TimeoutScheduler",
]
