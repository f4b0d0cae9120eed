"""
Webhook Dispatcher.

Fans lifecycle events of an execution out to the execution's webhook
subscriptions. Deliveries run as background tasks: a slow or failing
receiver never delays or fails the execution that produced the event.
"""

from typing import Any, Dict, Optional, Protocol, Set
from datetime import datetime
import asyncio
import logging

import httpx

from dagflow.config import settings
from dagflow.engine.models import Execution, WebhookEvent, WebhookSubscription


logger = logging.getLogger(__name__)


def subscription_matches(
    subscription: WebhookSubscription,
    event: WebhookEvent,
    node_id: Optional[str] = None,
) -> bool:
    """
    Return True if the subscription wants this event.

    An empty events list means every event. node_ids only narrows node.*
    events; execution and wave events always pass it.
    """
    if subscription.events and event.value not in subscription.events:
        return False
    if event.is_node_event and subscription.node_ids is not None:
        return node_id in subscription.node_ids
    return True


def build_payload(
    event: WebhookEvent,
    execution: Execution,
    node_id: Optional[str] = None,
    **data: Any,
) -> Dict[str, Any]:
    """JSON body posted to subscribers."""
    payload: Dict[str, Any] = {
        "event": event.value,
        "execution_id": execution.id,
        "workflow_id": execution.workflow_id,
        "status": execution.status.value,
        "timestamp": datetime.now().isoformat(),
    }
    if node_id is not None:
        payload["node_id"] = node_id
    payload.update(data)
    return payload


class WebhookDelivery(Protocol):
    """Transport that delivers one payload to one subscription."""

    async def deliver(self, payload: Dict[str, Any], subscription: WebhookSubscription) -> None:
        ...


class HttpWebhookDelivery:
    """
    POSTs payloads as JSON with httpx.

    Transport errors and 5xx responses are retried with exponential
    backoff; 4xx responses fail immediately.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        backoff: Optional[float] = None,
    ):
        self._client = client
        self.timeout = timeout if timeout is not None else settings.WEBHOOK_TIMEOUT
        self.max_retries = max_retries if max_retries is not None else settings.WEBHOOK_MAX_RETRIES
        self.retry_delay = retry_delay if retry_delay is not None else settings.WEBHOOK_RETRY_DELAY
        self.backoff = backoff if backoff is not None else settings.WEBHOOK_RETRY_BACKOFF

    async def deliver(self, payload: Dict[str, Any], subscription: WebhookSubscription) -> None:
        """
        Deliver a payload, retrying transient failures.

        Raises:
            httpx.HTTPError: When the last attempt fails
        """
        headers = {"Content-Type": "application/json", **subscription.headers}
        delay = self.retry_delay
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await self._post(subscription.url, payload, headers)
                if response.status_code < 500 or attempt > self.max_retries:
                    response.raise_for_status()
                    return
                logger.debug(
                    f"Webhook {subscription.url} returned {response.status_code} "
                    f"(attempt {attempt}), retrying in {delay}s"
                )
            except httpx.TransportError as e:
                if attempt > self.max_retries:
                    raise
                logger.debug(f"Webhook {subscription.url} unreachable (attempt {attempt}): {e}")

            await asyncio.sleep(delay)
            delay *= self.backoff

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=headers)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=payload, headers=headers)


class WebhookDispatcher:
    """
    Fire-and-forget fan-out of execution events.

    Usage:
        dispatcher = WebhookDispatcher()
        dispatcher.dispatch(WebhookEvent.NODE_COMPLETED, execution, node_id="fetch")
        await dispatcher.drain()
    """

    def __init__(self, delivery: Optional[WebhookDelivery] = None):
        self.delivery = delivery or HttpWebhookDelivery()
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def dispatch(
        self,
        event: WebhookEvent,
        execution: Execution,
        node_id: Optional[str] = None,
        **data: Any,
    ) -> int:
        """
        Schedule delivery of an event to every matching subscription.

        Must be called from a running event loop.

        Returns:
            Number of deliveries scheduled
        """
        targets = [s for s in execution.webhooks if subscription_matches(s, event, node_id)]
        if not targets:
            return 0

        payload = build_payload(event, execution, node_id, **data)
        for subscription in targets:
            task = asyncio.create_task(self._deliver(payload, subscription))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return len(targets)

    async def _deliver(self, payload: Dict[str, Any], subscription: WebhookSubscription) -> None:
        try:
            await self.delivery.deliver(payload, subscription)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                f"Webhook delivery of '{payload['event']}' for execution "
                f"{payload['execution_id']} to {subscription.url} failed: {e}"
            )

    async def drain(self) -> None:
        """Wait until every scheduled delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel outstanding deliveries."""
        for task in list(self._pending):
            task.cancel()
        await asyncio.gather(*list(self._pending), return_exceptions=True)
