"""Unit tests for NotificationDispatcher service."""
import json
from unittest.mock import Mock, patch

import pytest
from google.api_core.exceptions import NotFound

from billing_engine.models.events import NotificationTemplate
from billing_engine.services.clock import Clock
from billing_engine.services.notification_dispatcher import (
    NotificationDispatcher,
    get_notification_dispatcher,
    reset_notification_dispatcher,
)

T0 = 1_700_000_000_000
TOPIC_PATH = "projects/billing-local/topics/billing-notifications"


@pytest.fixture
def mock_publisher():
    publisher = Mock()
    publisher.topic_path.return_value = TOPIC_PATH
    future = Mock()
    future.result.return_value = "message-id-1"
    publisher.publish.return_value = future
    return publisher


@pytest.fixture
def dispatcher(mock_publisher):
    with patch("billing_engine.services.notification_dispatcher.pubsub_v1.PublisherClient") as publisher_class, patch(
        "billing_engine.services.notification_dispatcher.pubsub_v1.SubscriberClient"
    ):
        publisher_class.return_value = mock_publisher
        yield NotificationDispatcher(clock=Clock(frozen_at_millis=T0))


class TestDispatcherInitialization:
    """Test NotificationDispatcher initialization and configuration."""

    def setup_method(self):
        reset_notification_dispatcher()

    def test_dispatcher_initializes_when_enabled(self, dispatcher, mock_publisher):
        assert dispatcher.is_enabled()
        mock_publisher.get_topic.assert_called_once_with(request={"topic": TOPIC_PATH})

    def test_missing_topic_is_created(self, mock_publisher):
        mock_publisher.get_topic.side_effect = NotFound("topic missing")

        with patch("billing_engine.services.notification_dispatcher.pubsub_v1.PublisherClient") as publisher_class, patch(
            "billing_engine.services.notification_dispatcher.pubsub_v1.SubscriberClient"
        ):
            publisher_class.return_value = mock_publisher
            dispatcher = NotificationDispatcher()

        mock_publisher.create_topic.assert_called_once_with(request={"name": TOPIC_PATH})
        assert dispatcher.is_enabled()

    def test_init_failure_disables_dispatcher(self):
        with patch(
            "billing_engine.services.notification_dispatcher.pubsub_v1.PublisherClient",
            side_effect=Exception("no credentials"),
        ):
            dispatcher = NotificationDispatcher()

        assert dispatcher.is_enabled() is False
        assert dispatcher.send(NotificationTemplate.SPECIAL_OFFER_EXPIRED, owner_id="owner-1") is False

    def test_singleton_pattern(self):
        with patch("billing_engine.services.notification_dispatcher.pubsub_v1.PublisherClient"), patch(
            "billing_engine.services.notification_dispatcher.pubsub_v1.SubscriberClient"
        ):
            assert get_notification_dispatcher() is get_notification_dispatcher()
        reset_notification_dispatcher()


class TestSend:
    """Test templated message publishing."""

    def test_send_publishes_message(self, dispatcher, mock_publisher):
        result = dispatcher.send(
            NotificationTemplate.SPECIAL_OFFER_EXPIRED,
            owner_id="owner-1",
            subscription_id="sub_local_1",
            amount=24.5,
            currency="usd",
        )

        assert result is True
        args, kwargs = mock_publisher.publish.call_args
        assert args[0] == TOPIC_PATH
        payload = json.loads(args[1].decode("utf-8"))
        assert payload["template"] == "special_offer_expired"
        assert payload["owner_id"] == "owner-1"
        assert payload["subscription_id"] == "sub_local_1"
        assert payload["event_time_millis"] == T0
        assert payload["context"] == {"amount": 24.5, "currency": "usd"}
        assert kwargs == {"template": "special_offer_expired", "owner_id": "owner-1"}

    def test_publish_failure_returns_false(self, dispatcher, mock_publisher):
        mock_publisher.publish.return_value.result.side_effect = TimeoutError("ack timeout")

        result = dispatcher.send(NotificationTemplate.SUBSCRIPTION_CANCELED, owner_id="owner-1")

        assert result is False

    def test_shutdown_disables_sending(self, dispatcher, mock_publisher):
        dispatcher.shutdown()

        assert dispatcher.is_enabled() is False
        assert dispatcher.send(NotificationTemplate.SUBSCRIPTION_CANCELED, owner_id="owner-1") is False
        mock_publisher.publish.assert_not_called()
        mock_publisher.stop.assert_called_once()
