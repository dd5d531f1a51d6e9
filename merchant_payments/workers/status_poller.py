"""
Status poller background worker.

Safety net for lost pushes: periodically asks the gateway about orders that
have sat in ``pending``/``paid`` for a while and reconciles the answers.
"""
import asyncio

import structlog

from merchant_payments.core.models import OrderStatus
from merchant_payments.core.order_service import OrderService

logger = structlog.get_logger(__name__)

POLLED_STATUSES = [OrderStatus.PENDING, OrderStatus.PAID]


class StatusPoller:
    """
    Periodic gateway poll for unsettled orders.

    Example:
        >>> poller = StatusPoller(order_service, interval_seconds=30)
        >>> task = asyncio.create_task(poller.start())
        >>> ...
        >>> poller.stop()
    """

    def __init__(
        self,
        order_service: OrderService,
        interval_seconds: float,
        min_age_seconds: float = 60.0,
    ):
        """
        Initialize status poller.

        Args:
            order_service: Service used to refresh each order
            interval_seconds: Delay between polling rounds
            min_age_seconds: Only poll orders not updated for this long
        """
        self.order_service = order_service
        self.interval_seconds = interval_seconds
        self.min_age_seconds = min_age_seconds
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def poll_once(self) -> int:
        """
        Refresh every stale unsettled order, one at a time.

        Returns:
            int: Number of orders whose state changed
        """
        order_ids = self.order_service.ledger.stale_orders(POLLED_STATUSES, self.min_age_seconds)
        if not order_ids:
            return 0

        logger.info("status_poll_started", orders=len(order_ids))
        changed = 0
        for order_id in order_ids:
            try:
                refresh = await self.order_service.refresh_status(order_id)
            except Exception as e:
                logger.error("status_poll_order_failed", order_id=order_id, error=str(e))
                continue
            if refresh and refresh.result and refresh.result.outcome.changed_state:
                changed += 1

        logger.info("status_poll_completed", orders=len(order_ids), changed=changed)
        return changed

    async def start(self) -> None:
        """Poll until stop() is called or the task is cancelled."""
        self._running = True
        logger.info("status_poller_started", interval_seconds=self.interval_seconds)

        try:
            while self._running:
                await asyncio.sleep(self.interval_seconds)
                if not self._running:
                    break
                try:
                    await self.poll_once()
                except Exception as e:
                    logger.error("status_poller_error", error=str(e))
        finally:
            self._running = False
            logger.info("status_poller_stopped")

    def stop(self) -> None:
        """Ask the loop to exit after the current round."""
        self._running = False
        logger.info("status_poller_stop_requested")
