"""Tests for the status sinks."""

import json
import logging
from unittest.mock import MagicMock

import pytest

from core.exploration.exploration_models import (
    ExplorationIssue,
    ExplorationProgress,
    ExplorationStatus,
    ExplorationTarget,
    ExplorationTargetType,
    IssueType,
)
from ml_components.exploration_q_learning import ExplorationQLearning
from services.exploration_publisher import LoggingStatusSink, MqttStatusPublisher

DEVICE = "192.168.1.5:5555"
STATUS_TOPIC = "visualmapper/exploration/status/192_168_1_5_5555"

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def client():
    client = MagicMock()
    client.publish.return_value = MagicMock(rc=0)
    return client


@pytest.fixture
def publisher(client):
    return MqttStatusPublisher(DEVICE, broker="broker.local", port=1884, client=client)


@pytest.fixture
def progress():
    return ExplorationProgress(
        package_name="com.example.shop",
        status=ExplorationStatus.IN_PROGRESS,
        state="exploring",
        screens_explored=3,
        elements_explored=7,
        coverage=0.42,
    )


def published(client, index=-1):
    topic, body = client.publish.call_args_list[index].args
    return topic, json.loads(body)


# ===================================================================
# MQTT publisher
# ===================================================================


class TestMqttStatusPublisher:
    def test_topics(self, publisher):
        assert publisher.status_topic == STATUS_TOPIC
        assert publisher.logs_topic == "visualmapper/exploration/logs"
        assert publisher.qtable_topic == "visualmapper/exploration/qtable"
        assert publisher.broker == "broker.local"
        assert publisher.port == 1884

    def test_credentials(self, client):
        MqttStatusPublisher(DEVICE, username="explorer", password="secret", client=client)
        client.username_pw_set.assert_called_once_with("explorer", "secret")

    def test_state_change(self, publisher, client):
        publisher.on_state_change("exploring", "stuck", "stuck_threshold_reached")
        topic, payload = published(client)
        assert topic == STATUS_TOPIC
        assert payload["type"] == "state"
        assert payload["device_id"] == DEVICE
        assert payload["new_state"] == "stuck"
        assert client.publish.call_args.kwargs["qos"] == 0

    def test_progress_issue_intent_help(self, publisher, client, progress):
        publisher.on_progress(progress)
        publisher.on_issue(
            ExplorationIssue(screen_id="s1", issue_type=IssueType.APP_LEFT, description="left")
        )
        publisher.on_action_intent(
            ExplorationTarget(type=ExplorationTargetType.TAP_ELEMENT, screen_id="s1", element_id="e1")
        )
        publisher.request_help("stuck", 30.0)

        kinds = [published(client, i)[1]["type"] for i in range(4)]
        assert kinds == ["progress", "issue", "intent", "help_request"]
        assert published(client, 0)[1]["coverage"] == 0.42
        assert published(client, 0)[1]["status"] == "in_progress"
        assert published(client, 2)[1]["type"] == "intent"
        assert published(client, 3)[1]["timeout_s"] == 30.0
        assert publisher.published == 4

    def test_training_log(self, publisher, client):
        publisher.on_training_log([])
        client.publish.assert_not_called()

        publisher.on_training_log([{"screen_hash": "s", "action_key": "a", "reward": 1.0}])
        topic, payload = published(client)
        assert topic == "visualmapper/exploration/logs"
        assert payload[0]["device_id"] == DEVICE

    def test_failed_publish_is_counted(self, publisher, client):
        client.publish.return_value = MagicMock(rc=4)
        publisher.on_state_change("idle", "initializing", "start_requested")
        assert publisher.failed == 1
        assert publisher.published == 0

    def test_connect(self, publisher, client):
        assert publisher.connect()
        client.connect.assert_called_once_with("broker.local", 1884, 60)
        client.loop_start.assert_called_once()

    def test_connect_failure(self, publisher, client):
        client.connect.side_effect = OSError("connection refused")
        assert not publisher.connect()
        client.loop_start.assert_not_called()

    def test_on_connect_subscribes_when_policy_attached(self, publisher, client):
        publisher.attach_policy(ExplorationQLearning())
        client.subscribe.assert_not_called()
        publisher._on_connect(client, None, {}, 0)
        assert publisher.is_connected
        client.subscribe.assert_called_once_with("visualmapper/exploration/qtable")
        assert published(client)[1] == {"type": "availability", "online": True}

    def test_on_connect_failure(self, publisher, client):
        publisher._on_connect(client, None, {}, 5)
        assert not publisher.is_connected
        client.publish.assert_not_called()

    def test_disconnect(self, publisher, client):
        publisher._on_connect(client, None, {}, 0)
        publisher.disconnect()
        assert published(client)[1] == {"type": "availability", "online": False}
        client.loop_stop.assert_called_once()
        assert not publisher.is_connected

    def test_qtable_message_merged(self, publisher, client):
        policy = ExplorationQLearning()
        publisher.attach_policy(policy)
        msg = MagicMock(topic="visualmapper/exploration/qtable", payload=json.dumps({"s|a": 0.8}).encode())
        publisher._on_message(client, None, msg)
        assert policy.get_q_value("s", "a") == pytest.approx(0.8)

    def test_bad_or_foreign_messages_ignored(self, publisher, client):
        policy = ExplorationQLearning()
        publisher.attach_policy(policy)
        publisher._on_message(client, None, MagicMock(topic="visualmapper/exploration/qtable", payload=b"\xff\xfe"))
        publisher._on_message(client, None, MagicMock(topic="other/topic", payload=b'{"s|a": 1.0}'))
        assert policy.q_table == {}


# ===================================================================
# Logging sink
# ===================================================================


class TestLoggingStatusSink:
    def test_logs_progress_and_issues(self, caplog, progress):
        sink = LoggingStatusSink("shop")
        with caplog.at_level(logging.INFO, logger="services.exploration_publisher"):
            sink.on_progress(progress.model_copy(update={"message": "halfway"}))
            sink.on_issue(
                ExplorationIssue(screen_id="s1", issue_type=IssueType.APP_LEFT, description="left the app")
            )
            sink.request_help("stuck", 30.0)
        assert "[shop] 3 screens, 7 elements" in caplog.text
        assert "coverage 42% - halfway" in caplog.text
        assert "app_left: left the app" in caplog.text
        assert "HELP NEEDED (30s)" in caplog.text
