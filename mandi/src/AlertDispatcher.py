"""AlertDispatcher: Volatility alerts to subscribed vendors.

Dispatch runs in a background task off the price path and notifies vendors
concurrently. Every error (subscription lookup, notification delivery) is
logged and swallowed, so a failing notification channel can never fail a
price request.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from abc import ABC, abstractmethod

import httpx

from .models import AlertSubscription, PriceAlert, utcnow

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_PERCENT = 10.0


class SubscriptionStore(ABC):
    """Where alert subscriptions live."""

    @abstractmethod
    async def list_subscribers(self, commodity: str) -> list[AlertSubscription]:
        """List every subscription for a commodity."""
        pass

    @abstractmethod
    async def replace_subscriptions(
        self, vendor_id: str, subscriptions: list[AlertSubscription]
    ) -> None:
        """Replace all of a vendor's subscriptions."""
        pass


class NotificationSink(ABC):
    """Where alerts are delivered."""

    @abstractmethod
    async def notify(self, vendor_id: str, alert: PriceAlert) -> None:
        """Deliver one alert to one vendor."""
        pass


class InMemorySubscriptionStore(SubscriptionStore):
    """Process-local subscription store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_vendor: dict[str, list[AlertSubscription]] = {}

    async def list_subscribers(self, commodity: str) -> list[AlertSubscription]:
        with self._lock:
            return [
                sub
                for subs in self._by_vendor.values()
                for sub in subs
                if sub.commodity == commodity
            ]

    async def replace_subscriptions(
        self, vendor_id: str, subscriptions: list[AlertSubscription]
    ) -> None:
        with self._lock:
            self._by_vendor[vendor_id] = list(subscriptions)


class LoggingNotificationSink(NotificationSink):
    """Writes alerts to the log; the default when no channel is configured."""

    async def notify(self, vendor_id: str, alert: PriceAlert) -> None:
        logger.info(f"Alert for vendor {vendor_id}: {alert.message}")


class WebhookNotificationSink(NotificationSink):
    """POSTs each alert as JSON to a webhook URL.

    :ivar url: Webhook endpoint.
    :ivar timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    async def notify(self, vendor_id: str, alert: PriceAlert) -> None:
        """Deliver the alert.

        :raises httpx.HTTPError: On network failure or non-2xx response.
        """
        payload = {"vendor_id": vendor_id, "alert": alert.to_dict()}
        if self._client is not None:
            response = await self._client.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()


class AlertDispatcher:
    """Builds and delivers volatility alerts.

    :ivar subscriptions: Subscription store consulted on each dispatch.
    :ivar sink: Notification channel.
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        sink: NotificationSink | None = None,
    ) -> None:
        self.subscriptions = subscriptions
        self.sink = sink or LoggingNotificationSink()

    async def dispatch(self, commodity: str, volatility: float) -> list[PriceAlert]:
        """Notify every subscriber whose threshold the volatility reaches.

        :param commodity: Commodity whose price moved.
        :param volatility: Volatility as a fraction (0.12 = 12%).
        :returns: Alerts that were delivered successfully.
        """
        try:
            subscribers = await self.subscriptions.list_subscribers(commodity)
        except Exception as e:
            logger.error(f"Failed to list alert subscribers for {commodity}: {e}")
            return []

        current = volatility * 100
        alerts = [
            self.build_alert(sub, current)
            for sub in subscribers
            if current >= sub.threshold_percent
        ]
        outcomes = await asyncio.gather(
            *(self.sink.notify(alert.vendor_id, alert) for alert in alerts),
            return_exceptions=True,
        )

        delivered: list[PriceAlert] = []
        for alert, outcome in zip(alerts, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    f"Failed to notify vendor {alert.vendor_id} about {commodity}: {outcome}"
                )
                continue
            delivered.append(alert)

        if delivered:
            logger.info(
                f"{commodity}: volatility {current:.1f}% alerted "
                f"{len(delivered)}/{len(subscribers)} subscribers"
            )
        return delivered

    @staticmethod
    def build_alert(sub: AlertSubscription, current_percent: float) -> PriceAlert:
        """Build the alert record for one subscriber."""
        created_at = utcnow()
        return PriceAlert(
            alert_id=f"alert_{int(created_at.timestamp() * 1000)}_{sub.vendor_id}_{uuid.uuid4().hex[:8]}",
            vendor_id=sub.vendor_id,
            commodity=sub.commodity,
            threshold=sub.threshold_percent,
            current_value=current_percent,
            message=(
                f"High volatility detected for {sub.commodity}: {current_percent:.1f}%"
            ),
            created_at=created_at,
        )
