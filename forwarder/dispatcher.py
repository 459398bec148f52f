import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable

import httpx

from forwarder.signing import HMAC_SHA256, sign
from models.data_models import DeliveryResult, Message, WebhookConfig, WebhookPayload
from models.errors import NetworkDeliveryFailure
from utils.logger import get_logger

logger = get_logger(__name__)

USER_AGENT = "SMS-Webhook-Relay/1.0"
DEFAULT_TIMEOUT_SECONDS = 15.0
TEST_ID = "TEST"
TEST_SENDER = "TEST-SENDER"
TEST_BODY = "This is a webhook test message from SMS Webhook Relay"

ResultCallback = Callable[[Message, DeliveryResult], None]


class WebhookDispatcher:
    """POSTs each message to the webhook exactly once.

    At most one delivery per message id is in progress at any time; a second
    dispatch() for an id already in flight returns immediately without
    touching the network. Failures are logged and returned, never retried.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        scheme: str = HMAC_SHA256,
        max_workers: int = 3,
        executor: Executor | None = None,
    ):
        self.client = client or httpx.Client()
        self.timeout = timeout
        self.scheme = scheme
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="webhook")

    def build_payload(self, message: Message, config: WebhookConfig) -> WebhookPayload:
        timestamp = int(message.received_at.timestamp() * 1000)
        return WebhookPayload(
            message=message.body,
            sender=message.sender,
            timestamp=timestamp,
            signature=sign(message.body, message.sender, timestamp, config.secret, self.scheme),
        )

    def dispatch(self, message: Message, config: WebhookConfig) -> DeliveryResult:
        """Deliver one message synchronously."""
        return self._deliver(message, config, str(message.id))

    def submit(self, message: Message, config: WebhookConfig, on_result: ResultCallback | None = None) -> Future:
        """Deliver on the worker pool so the caller (the poll loop) never waits on HTTP."""
        future = self._executor.submit(self.dispatch, message, config)

        def done(f: Future) -> None:
            if on_result is None:
                return
            try:
                result = f.result()
            except Exception as e:
                result = DeliveryResult(message_id=str(message.id), ok=False, error=str(e))
            try:
                on_result(message, result)
            except Exception as e:
                logger.error(f"Delivery result callback failed: {e}", exc_info=True)

        future.add_done_callback(done)
        return future

    def test_delivery(self, config: WebhookConfig) -> DeliveryResult:
        """Send a synthetic message through the normal delivery path.

        Raises:
            InvalidConfiguration: before any network I/O if the URL is not http(s).
        """
        config.validate()
        message = Message(
            id=0,
            sender=TEST_SENDER,
            body=TEST_BODY,
            received_at=datetime.now(timezone.utc),
        )
        return self._deliver(message, config, TEST_ID)

    def is_in_flight(self, delivery_id: str) -> bool:
        with self._lock:
            return delivery_id in self._in_flight

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self.client.close()

    def _deliver(self, message: Message, config: WebhookConfig, delivery_id: str) -> DeliveryResult:
        with self._lock:
            if delivery_id in self._in_flight:
                logger.info(f"Delivery for message {delivery_id} already in flight, skipping")
                return DeliveryResult(message_id=delivery_id, ok=False, skipped=True)
            self._in_flight.add(delivery_id)

        try:
            payload = self.build_payload(message, config)
            response = self._post(config.url, payload, delivery_id)
            logger.info(f"Webhook delivered message {delivery_id} ({response.status_code})")
            return DeliveryResult(message_id=delivery_id, ok=True, status_code=response.status_code)
        except NetworkDeliveryFailure as e:
            logger.error(f"Webhook delivery failed for message {delivery_id}: {e}")
            return DeliveryResult(message_id=delivery_id, ok=False, status_code=e.status_code, error=str(e))
        finally:
            with self._lock:
                self._in_flight.discard(delivery_id)

    def _post(self, url: str, payload: WebhookPayload, delivery_id: str) -> httpx.Response:
        headers = {
            "Content-Type": "application/json",
            "X-SMS-Signature": payload.signature,
            "X-SMS-ID": delivery_id,
            "User-Agent": USER_AGENT,
        }
        try:
            response = self.client.post(url, json=payload.to_dict(), headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise NetworkDeliveryFailure(f"timed out after {self.timeout:g}s") from e
        except httpx.HTTPStatusError as e:
            raise NetworkDeliveryFailure(
                f"HTTP {e.response.status_code} from {url}", status_code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise NetworkDeliveryFailure(f"{type(e).__name__}: {e}") from e
        return response
