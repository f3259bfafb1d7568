"""
Notification delivery queue - decouples event processing from socket writes.

The dispatcher publishes without awaiting; a small worker pool drains the
bounded queue into the ConnectionManager. A full queue drops the notification
(logged and alerted) rather than blocking processing.
"""
import asyncio
import logging
from typing import Optional

from bookon_relay.schemas.notifications import Notification

logger = logging.getLogger(__name__)


class NotificationDeliveryQueue:
    def __init__(self, manager, maxsize: int = 1000, workers: int = 4):
        self.manager = manager
        self.worker_count = max(1, workers)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._workers: list[asyncio.Task] = []
        self.dropped = 0
        self.delivered = 0

    def publish(self, notification: Notification) -> bool:
        """Enqueue without blocking. Returns False if the notification was dropped."""
        try:
            self._queue.put_nowait(notification)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Delivery queue full - dropping %s for %s %s",
                notification.kind, notification.address_type, notification.address_id,
            )
            self._alert_full()
            return False

    def _alert_full(self) -> None:
        from bookon_relay.utils.alerting import schedule_alert, AlertType
        schedule_alert(
            AlertType.DELIVERY_QUEUE_FULL,
            f"Notification delivery queue full ({self._queue.maxsize}); {self.dropped} dropped",
            severity="warning",
        )

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"notification-delivery-{i}")
            for i in range(self.worker_count)
        ]
        logger.info("Notification delivery started (%d workers)", self.worker_count)

    async def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Drain what is queued (bounded by timeout), then stop the workers."""
        if timeout:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Delivery queue not drained on shutdown (%d left)", self.depth)
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []

    async def drain(self) -> None:
        """Wait until every queued notification has been handled."""
        await self._queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            notification = await self._queue.get()
            try:
                delivered = await self.manager.deliver(notification)
                self.delivered += delivered
            except Exception as e:
                logger.error(
                    "Notification delivery error (worker %d): %s", index, str(e), exc_info=True,
                )
            finally:
                self._queue.task_done()
