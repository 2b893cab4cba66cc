"""
Synchronous publish/subscribe bus with one fixed payload type per topic.
"""

import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List

from domain import Interface

logger = logging.getLogger(__name__)


class Topic(str, Enum):
    INTERFACE_CREATED = 'interface:created'
    INTERFACE_UPDATED = 'interface:updated'
    INTERFACE_DELETED = 'interface:deleted'
    PEER_INTERFACE_UPDATED = 'peer:interface:updated'


# interface events carry the interface, the peer event only the interface identifier
TOPIC_PAYLOADS: Dict[Topic, type] = {
    Topic.INTERFACE_CREATED: Interface,
    Topic.INTERFACE_UPDATED: Interface,
    Topic.INTERFACE_DELETED: Interface,
    Topic.PEER_INTERFACE_UPDATED: str,
}


class EventBus:
    """Delivers each published payload to the topic's handlers in subscription order"""

    def __init__(self):
        self._handlers: Dict[Topic, List[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, topic: Topic, handler: Callable[[Any], None]) -> None:
        topic = Topic(topic)
        self._handlers[topic].append(handler)
        logger.debug(f"Subscribed {getattr(handler, '__qualname__', handler)} to {topic.value}")

    def publish(self, topic: Topic, payload: Any) -> None:
        topic = Topic(topic)
        expected = TOPIC_PAYLOADS[topic]
        if not isinstance(payload, expected):
            raise TypeError(f"topic {topic.value} expects {expected.__name__}, got {type(payload).__name__}")

        for handler in list(self._handlers[topic]):
            handler(payload)
