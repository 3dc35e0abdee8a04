"""
Exploration status sinks

LoggingStatusSink writes everything the explorer reports to the log.
MqttStatusPublisher publishes it to the broker so dashboards and the ML
training server can follow a run:

    visualmapper/exploration/status/{device_id}   state, progress, issues, help
    visualmapper/exploration/logs                 experience batches for training
    visualmapper/exploration/qtable               merged Q-table pushed back by the server

Sinks are fire-and-forget: a failed publish is logged, never raised into the
exploration loop.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional

import paho.mqtt.client as mqtt

from config.defaults import Defaults
from core.exploration.exploration_models import (
    ExplorationIssue,
    ExplorationProgress,
    ExplorationTarget,
)

logger = logging.getLogger(__name__)


class LoggingStatusSink:
    """Status sink that only logs"""

    def __init__(self, name: str = "explorer"):
        self.name = name

    def on_state_change(self, old_state: str, new_state: str, event: str) -> None:
        logger.info(f"[{self.name}] {old_state} -> {new_state} ({event})")

    def on_progress(self, progress: ExplorationProgress) -> None:
        logger.info(
            f"[{self.name}] {progress.screens_explored} screens, "
            f"{progress.elements_explored} elements, queue {progress.queue_size}, "
            f"coverage {progress.coverage:.0%}"
            + (f" - {progress.message}" if progress.message else "")
        )

    def on_issue(self, issue: ExplorationIssue) -> None:
        logger.warning(f"[{self.name}] {issue.issue_type.value}: {issue.description}")

    def on_action_intent(self, target: ExplorationTarget) -> None:
        logger.debug(f"[{self.name}] About to act on {target.key}")

    def request_help(self, message: str, timeout_s: float) -> None:
        logger.warning(f"[{self.name}] HELP NEEDED ({timeout_s:.0f}s): {message}")

    def on_training_log(self, entries: List[Dict]) -> None:
        logger.info(f"[{self.name}] {len(entries)} experience entries collected")


class MqttStatusPublisher:
    """
    Publishes explorer status over MQTT with paho-mqtt.

    Usage:
        publisher = MqttStatusPublisher(device_id="192.168.1.100:5555")
        publisher.connect()
        publisher.attach_policy(explorer.policy)   # optional Q-table sync
        explorer = AppExplorer(provider, actuator, status_sink=publisher)
        ...
        publisher.disconnect()
    """

    def __init__(
        self,
        device_id: str,
        broker: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client: Optional[mqtt.Client] = None,
    ):
        """
        Args:
            device_id: Device the explorer drives (used in topics and payloads)
            broker: Broker host (Defaults.MQTT_BROKER)
            port: Broker port (Defaults.MQTT_PORT)
            username: Optional broker username
            password: Optional broker password
            client: Pre-built paho client (tests)
        """
        self.device_id = device_id
        self.broker = broker or Defaults.MQTT_BROKER
        self.port = port or Defaults.MQTT_PORT
        self.qos = Defaults.MQTT_QOS
        self.status_topic = f"{Defaults.MQTT_TOPIC_STATUS}/{self._sanitize_device_id(device_id)}"
        self.logs_topic = Defaults.MQTT_TOPIC_LOGS
        self.qtable_topic = Defaults.MQTT_TOPIC_QTABLE
        self.policy = None
        self._connected = False
        self.published = 0
        self.failed = 0

        self.client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"app_explorer_{self._sanitize_device_id(device_id)}_{int(time.time())}",
        )
        if username and password:
            self.client.username_pw_set(username, password)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

    @staticmethod
    def _sanitize_device_id(device_id: str) -> str:
        """Replace characters that are not valid in topic segments"""
        for char in (":", ".", "/", "+", "#"):
            device_id = device_id.replace(char, "_")
        return device_id

    # =========================================================================
    # Connection
    # =========================================================================

    def connect(self) -> bool:
        try:
            self.client.connect(self.broker, self.port, Defaults.MQTT_KEEPALIVE)
        except OSError as e:
            logger.error(f"[MqttStatusPublisher] Cannot reach {self.broker}:{self.port}: {e}")
            return False
        self.client.loop_start()
        return True

    def disconnect(self):
        self._publish(self.status_topic, {"type": "availability", "online": False})
        self.client.loop_stop()
        self.client.disconnect()
        self._connected = False
        logger.info("[MqttStatusPublisher] Disconnected")

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            logger.info(f"[MqttStatusPublisher] Connected to {self.broker}:{self.port}")
            self._connected = True
            if self.policy is not None:
                client.subscribe(self.qtable_topic)
            self._publish(self.status_topic, {"type": "availability", "online": True})
        else:
            logger.error(f"[MqttStatusPublisher] Connection failed: {reason_code}")
            self._connected = False

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        logger.warning(f"[MqttStatusPublisher] Disconnected from broker: {reason_code}")
        self._connected = False

    def attach_policy(self, policy):
        """Merge Q-tables the training server publishes into this policy"""
        self.policy = policy
        if self._connected:
            self.client.subscribe(self.qtable_topic)

    def _on_message(self, client, userdata, msg):
        if msg.topic != self.qtable_topic or self.policy is None:
            return
        try:
            merged = self.policy.merge_server_q_table(msg.payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning(f"[MqttStatusPublisher] Bad Q-table payload: {e}")
            return
        logger.info(f"[MqttStatusPublisher] Merged {merged} Q-values from server")

    def _publish(self, topic: str, payload: Any) -> bool:
        try:
            info = self.client.publish(topic, json.dumps(payload, default=str), qos=self.qos)
        except (ValueError, TypeError) as e:
            logger.warning(f"[MqttStatusPublisher] Publish to {topic} failed: {e}")
            self.failed += 1
            return False
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.debug(f"[MqttStatusPublisher] Publish to {topic} returned rc={info.rc}")
            self.failed += 1
            return False
        self.published += 1
        return True

    def _status(self, kind: str, data: Dict[str, Any]) -> bool:
        payload = {"type": kind, "device_id": self.device_id, "timestamp": time.time()}
        payload.update(data)
        return self._publish(self.status_topic, payload)

    # =========================================================================
    # StatusSink
    # =========================================================================

    def on_state_change(self, old_state: str, new_state: str, event: str) -> None:
        self._status("state", {"old_state": old_state, "new_state": new_state, "event": event})

    def on_progress(self, progress: ExplorationProgress) -> None:
        self._status("progress", progress.model_dump(mode="json"))

    def on_issue(self, issue: ExplorationIssue) -> None:
        self._status("issue", issue.model_dump(mode="json"))

    def on_action_intent(self, target: ExplorationTarget) -> None:
        self._status("intent", target.model_dump(mode="json"))

    def request_help(self, message: str, timeout_s: float) -> None:
        self._status("help_request", {"message": message, "timeout_s": timeout_s})

    def on_training_log(self, entries: List[Dict]) -> None:
        if not entries:
            return
        for entry in entries:
            entry.setdefault("device_id", self.device_id)
        if self._publish(self.logs_topic, entries):
            logger.info(f"[MqttStatusPublisher] Sent {len(entries)} experience entries")
