import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from forwarder.dispatcher import WebhookDispatcher
from forwarder.health import ERROR_WINDOW, STALE_AFTER, HealthChecks, evaluate_health
from forwarder.relay import MessageRelay
from host.persistent_context import PersistentContext
from host.power import PowerManager, UnmanagedPowerManager
from inbox.base_source import InboxSource
from inbox.poller import InboxPoller
from models.data_models import (
    HealthReport,
    Message,
    MonitorState,
    PermissionState,
    ServiceState,
    StatusDescriptor,
    WebhookConfig,
)
from models.errors import (
    InvalidConfiguration,
    PermissionDenied,
    PlatformCapabilityFailure,
    RelayError,
    TransientPollError,
)
from utils.dedup_store import DedupStore
from utils.logger import get_logger
from utils.scheduler import Scheduler
from utils.state_store import IS_LISTENING_KEY, WEBHOOK_CONFIG_KEY, StateStore

logger = get_logger(__name__)

STATUS_TITLE = "SMS Webhook Active"


class LifecycleManager:
    """Owns monitoring: Stopped -> Starting -> Running -> Stopping -> Stopped.

    Built once at process start with every collaborator injected, then
    passed around. Besides the state machine it:

    - keeps the persistent execution context in step with monitoring
    - persists {is_listening, config} so a restarted process can resume
      a session instead of announcing a new one
    - refreshes the context's status line after cycles that processed messages
    """

    def __init__(
        self,
        source: InboxSource,
        dispatcher: WebhookDispatcher,
        context: PersistentContext,
        store: StateStore,
        scheduler: Scheduler,
        power: PowerManager | None = None,
        config: WebhookConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        stale_after: timedelta = STALE_AFTER,
        error_window: timedelta = ERROR_WINDOW,
        **poller_options: Any,
    ):
        self.source = source
        self.dispatcher = dispatcher
        self.context = context
        self.store = store
        self.power = power or UnmanagedPowerManager()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.stale_after = stale_after
        self.error_window = error_window
        self.config = config

        self.state = MonitorState.STOPPED
        self.service_state = ServiceState()
        self.dedup = DedupStore()
        self.relay = MessageRelay(dispatcher, clock=self.clock)
        self.relay.config = config
        self.poller = InboxPoller(
            source=source,
            dedup=self.dedup,
            scheduler=scheduler,
            state=self.service_state,
            on_messages=self._on_messages,
            on_error=self.relay.record_error,
            clock=self.clock,
            **poller_options,
        )

        self._transition_lock = threading.RLock()
        self._resume_checked = False

    # ── Commands ─────────────────────────────────────────────────────────

    def start(self, config: WebhookConfig | None = None) -> MonitorState:
        """Begin monitoring.

        Raises:
            InvalidConfiguration: no webhook configured, or its URL is not http(s).
            PermissionDenied:     the inbox source refused access.
        """
        with self._transition_lock:
            if self.state != MonitorState.STOPPED:
                logger.info(f"Start ignored, monitoring is {self.state.value}")
                return self.state

            config = config or self.config
            if config is None:
                raise InvalidConfiguration("No webhook configured")
            config.validate()
            self._apply_config(config)

            self._set_state(MonitorState.STARTING)
            try:
                self._ensure_permission()
                if self._probe_previous_session():
                    logger.info("Persistent context from previous process still active, resuming session")
                    self.service_state.is_persistent_context_active = True
                else:
                    self._activate_context()
                self.poller.start()
            except Exception:
                self._set_state(MonitorState.STOPPED)
                raise

            self.service_state.is_listening = True
            self._set_state(MonitorState.RUNNING)
            self.store.set(IS_LISTENING_KEY, True)
            self.store.set(WEBHOOK_CONFIG_KEY, config.to_dict())
            return self.state

    def stop(self) -> MonitorState:
        """Stop monitoring. Safe to call when already stopped."""
        with self._transition_lock:
            if self.state == MonitorState.STOPPED:
                return self.state
            self._set_state(MonitorState.STOPPING)
            self.poller.stop()
            if self.service_state.is_persistent_context_active:
                try:
                    self.context.deactivate()
                except PlatformCapabilityFailure as e:
                    logger.warning(f"Could not deactivate persistent context: {e}")
                    self.relay.record_error(f"Context deactivation failed: {e}")
                self.service_state.is_persistent_context_active = False
            self.service_state.is_listening = False
            self._set_state(MonitorState.STOPPED)
            self.store.set(IS_LISTENING_KEY, False)
            return self.state

    def resume(self) -> bool:
        """Called at process entry: restart monitoring if it was on before.

        Returns True if monitoring is running afterwards.
        """
        if not self.store.get(IS_LISTENING_KEY, False):
            logger.info("Monitoring was not active before restart")
            return False
        saved = self.store.get(WEBHOOK_CONFIG_KEY)
        if not saved:
            logger.warning("Monitoring was active but no webhook config was saved")
            return False
        try:
            self.start(WebhookConfig.from_dict(saved))
        except (PermissionDenied, InvalidConfiguration) as e:
            logger.error(f"Could not resume monitoring: {e}")
            self.relay.record_error(f"Resume failed: {e}")
            return False
        return self.state == MonitorState.RUNNING

    def configure(self, config: WebhookConfig) -> None:
        """Replace the webhook config; takes effect for the next message."""
        config.validate()
        with self._transition_lock:
            self._apply_config(config)
            self.store.set(WEBHOOK_CONFIG_KEY, config.to_dict())
        logger.info("Webhook configuration updated")

    def subscribe(self, callback: Callable[[Message], None]) -> int:
        return self.relay.subscribers.add(callback)

    def unsubscribe(self, handle: int) -> bool:
        return self.relay.subscribers.remove(handle)

    # ── Status ───────────────────────────────────────────────────────────

    def descriptor(self) -> StatusDescriptor:
        processed = self.relay.processed_total
        updated_at = self.relay.last_processed_at
        text = f"Monitoring SMS • {processed} processed"
        if updated_at is not None:
            text += f" • last {updated_at.strftime('%H:%M:%S')}"
        return StatusDescriptor(title=STATUS_TITLE, text=text, processed_count=processed, updated_at=updated_at)

    def health(self) -> HealthReport:
        try:
            permission = self.source.check_permission()
        except RelayError as e:
            logger.warning(f"Permission check failed: {e}")
            permission = PermissionState.DENIED
        now = self.clock()
        checks = HealthChecks(
            permission=permission,
            context_active=self.service_state.is_persistent_context_active,
            power=self.power.state(),
            last_activity=self.relay.last_processed_at,
            recent_errors=self.relay.recent_errors(since=now - self.error_window),
        )
        return evaluate_health(checks, now=now, stale_after=self.stale_after)

    def status(self) -> dict:
        url = self.config.url if self.config else None
        return {
            "state": self.state.value,
            "is_listening": self.service_state.is_listening,
            "has_webhook": self.config is not None,
            "webhook_url": (url[:50] + "...") if url and len(url) > 50 else url,
            "subscriber_count": len(self.relay.subscribers),
            "processed_total": self.relay.processed_total,
            "delivered_total": self.relay.delivered_total,
            "failed_total": self.relay.failed_total,
            "today_count": self.relay.today_count(),
            "last_seen_id": self.service_state.last_seen_id,
            "last_seen_count": self.service_state.last_seen_count,
            "poll_phase": self.poller.phase,
            "persistent_context_active": self.service_state.is_persistent_context_active,
            "last_processed_at": self.relay.last_processed_at.isoformat() if self.relay.last_processed_at else None,
        }

    # ── Internals ────────────────────────────────────────────────────────

    def _set_state(self, state: MonitorState) -> None:
        logger.info(f"Monitoring: {self.state.value} -> {state.value}")
        self.state = state

    def _apply_config(self, config: WebhookConfig) -> None:
        self.config = config
        self.relay.config = config

    def _ensure_permission(self) -> None:
        try:
            granted = self.source.check_permission() == PermissionState.GRANTED
        except TransientPollError as e:
            # Unreachable is not denied; the poller keeps trying and takes the baseline later
            logger.warning(f"Could not check inbox permission: {e}")
            self.relay.record_error(f"Permission check failed: {e}")
            return
        if granted:
            return
        logger.info("Inbox permission missing, requesting it")
        if self.source.request_permission() != PermissionState.GRANTED:
            raise PermissionDenied("Inbox access was denied")

    def _probe_previous_session(self) -> bool:
        """On the first start of this process, check for a context that
        outlived the previous one. update() is idempotent, so success means
        the context is live and must not be activated twice."""
        if self._resume_checked:
            return False
        self._resume_checked = True
        if not self.store.get(IS_LISTENING_KEY, False):
            return False
        try:
            self.context.update(self.descriptor())
        except PlatformCapabilityFailure as e:
            logger.info(f"No surviving persistent context ({e}), starting a fresh session")
            return False
        return True

    def _activate_context(self) -> None:
        try:
            self.context.activate(self.descriptor())
        except PlatformCapabilityFailure as e:
            # Monitoring still works while the process lives; it just is not protected
            logger.warning(f"Persistent context unavailable, monitoring in foreground only: {e}")
            self.relay.record_error(f"Persistent context activation failed: {e}")
            self.service_state.is_persistent_context_active = False
            return
        self.service_state.is_persistent_context_active = True

    def _on_messages(self, messages: list[Message]) -> None:
        if not self.relay.handle(messages):
            return
        if not self.service_state.is_persistent_context_active:
            return
        try:
            self.context.update(self.descriptor())
        except PlatformCapabilityFailure as e:
            logger.warning(f"Could not refresh persistent context status: {e}")
            self.relay.record_error(f"Context update failed: {e}")
