"""
Services Package - persistence and status publishing adapters
"""
from .exploration_publisher import LoggingStatusSink, MqttStatusPublisher
from .policy_store import (
    InMemoryPolicyStore,
    SQLitePolicyStore,
    WriteBehindPolicyStore,
    create_policy_store,
)

__all__ = [
    "LoggingStatusSink",
    "MqttStatusPublisher",
    "InMemoryPolicyStore",
    "SQLitePolicyStore",
    "WriteBehindPolicyStore",
    "create_policy_store",
]
