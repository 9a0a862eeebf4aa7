"""Templated notification publishing to Google Cloud Pub/Sub.

Responsibilities:
- Format NotificationMessage payloads
- Publish to the configured Pub/Sub topic for the mailer to consume
- Manage Pub/Sub client lifecycle

Notifications are fire-and-forget: a failure is logged and reported as
False, never raised into the billing flow that triggered it.
"""

from threading import RLock
from typing import Any, Callable, Optional

from google.api_core.exceptions import NotFound
from google.cloud import pubsub_v1

from billing_engine.logging_config import get_logger
from billing_engine.models.events import NotificationMessage, NotificationTemplate
from billing_engine.services.clock import Clock, get_clock

logger = get_logger(__name__)


class NotificationDispatcher:
    """Dispatches templated messages to Google Cloud Pub/Sub.

    Thread-safe singleton pattern.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._lock = RLock()
        self._publisher: Optional[pubsub_v1.PublisherClient] = None
        self._topic_path: Optional[str] = None
        self._enabled = False
        self._publish_timeout = 5.0
        self._clock = clock if clock is not None else get_clock()

        self._initialize()

    def _initialize(self) -> None:
        """Create the publisher and make sure the topic and mailer subscription exist."""
        from billing_engine.config import get_config

        config = get_config()
        self._enabled = config.notifications.enabled
        self._publish_timeout = config.notifications.publish_timeout_seconds
        if not self._enabled:
            logger.info("notification_dispatcher_disabled", message="Notifications are disabled in config")
            return

        project_id = config.pubsub_project_id
        try:
            self._publisher = pubsub_v1.PublisherClient()
            self._topic_path = self._publisher.topic_path(project_id, config.pubsub_topic)
            self._get_or_create(
                "topic",
                self._topic_path,
                lambda: self._publisher.get_topic(request={"topic": self._topic_path}),
                lambda: self._publisher.create_topic(request={"name": self._topic_path}),
            )

            if config.pubsub_subscription:
                subscriber = pubsub_v1.SubscriberClient()
                subscription_path = subscriber.subscription_path(project_id, config.pubsub_subscription)
                self._get_or_create(
                    "subscription",
                    subscription_path,
                    lambda: subscriber.get_subscription(request={"subscription": subscription_path}),
                    lambda: subscriber.create_subscription(
                        request={"name": subscription_path, "topic": self._topic_path}
                    ),
                )

            logger.info("notification_dispatcher_initialized", project_id=project_id, topic_path=self._topic_path)

        except Exception as e:
            logger.error(
                "notification_dispatcher_init_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self._enabled = False

    @staticmethod
    def _get_or_create(
        resource: str, path: str, get: Callable[[], Any], create: Callable[[], Any]
    ) -> None:
        try:
            get()
            logger.debug("pubsub_resource_exists", resource=resource, path=path)
        except NotFound:
            create()
            logger.info("pubsub_resource_created", resource=resource, path=path)

    def is_enabled(self) -> bool:
        """Check if the dispatcher can publish."""
        return self._enabled and self._publisher is not None

    def send(
        self,
        template: NotificationTemplate,
        owner_id: str,
        subscription_id: Optional[str] = None,
        **context: Any,
    ) -> bool:
        """Publish a templated message.

        Args:
            template: Message template
            owner_id: Recipient account
            subscription_id: Local subscription row id the message is about
            **context: Template variables

        Returns:
            True if published successfully, False otherwise
        """
        if not self.is_enabled():
            logger.debug("notification_dispatcher_disabled", message="Skipping notification", template=template.value)
            return False

        with self._lock:
            try:
                message = NotificationMessage(
                    template=template,
                    owner_id=owner_id,
                    subscription_id=subscription_id,
                    event_time_millis=self._clock.now_millis(),
                    context=context,
                )
                self._publish(message)

                logger.info(
                    "notification_published",
                    template=template.value,
                    owner_id=owner_id,
                    subscription_id=subscription_id,
                )
                return True

            except Exception as e:
                logger.error(
                    "notification_publish_failed",
                    template=template.value,
                    owner_id=owner_id,
                    subscription_id=subscription_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                return False

    def _publish(self, message: NotificationMessage) -> None:
        """Publish one message and wait for the broker ack.

        Raises:
            GoogleAPIError: If publication fails after the client's retries
        """
        if not self._publisher or not self._topic_path:
            raise RuntimeError("Publisher is not initialized")

        data = message.model_dump_json().encode("utf-8")
        future = self._publisher.publish(
            self._topic_path,
            data,
            # Attributes for subscriber-side filtering
            template=message.template.value,
            owner_id=message.owner_id,
        )
        message_id = future.result(timeout=self._publish_timeout)
        logger.debug("pubsub_message_published", message_id=message_id)

    def shutdown(self) -> None:
        """Flush pending batches and drop the client."""
        with self._lock:
            if self._publisher is None:
                return
            publisher, self._publisher, self._topic_path = self._publisher, None, None
            try:
                publisher.stop()
            except RuntimeError as e:
                # stop() refuses a second call on an already stopped client
                logger.warning("notification_dispatcher_stop_failed", error=str(e))
            logger.info("notification_dispatcher_shutdown_complete")


_dispatcher: Optional[NotificationDispatcher] = None
_dispatcher_lock = RLock()


def get_notification_dispatcher() -> NotificationDispatcher:
    """Get or create the singleton NotificationDispatcher instance."""
    global _dispatcher
    if _dispatcher is None:
        with _dispatcher_lock:
            if _dispatcher is None:
                _dispatcher = NotificationDispatcher()
    return _dispatcher


def reset_notification_dispatcher() -> None:
    """Reset the singleton NotificationDispatcher instance (for testing)."""
    global _dispatcher
    with _dispatcher_lock:
        if _dispatcher is not None:
            _dispatcher.shutdown()
            _dispatcher = None
