"""
Kafka producer for reservation lifecycle events.
"""

import json
import logging
from typing import Any, Dict, Optional

from aiokafka import AIOKafkaProducer

from .config import get_settings

logger = logging.getLogger(__name__)


class KafkaProducer:
    """Async Kafka producer for publishing events."""

    def __init__(self, bootstrap_servers: Optional[str] = None):
        self.bootstrap_servers = bootstrap_servers or get_settings().kafka_bootstrap_servers
        self._producer: Optional[AIOKafkaProducer] = None

    async def start(self):
        """Start the Kafka producer."""
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            value_serializer=lambda v: json.dumps(v).encode('utf-8'),
            key_serializer=lambda k: k.encode('utf-8') if k else None
        )
        await self._producer.start()
        logger.info("Kafka producer started")

    async def stop(self):
        """Stop the Kafka producer."""
        if self._producer:
            await self._producer.stop()
            self._producer = None
            logger.info("Kafka producer stopped")

    async def publish(self, topic: str, event: Dict[str, Any], key: Optional[str] = None):
        """
        Publish an event to a Kafka topic.

        Args:
            topic: Kafka topic name
            event: Event data to publish
            key: Optional partition key
        """
        if not self._producer:
            raise RuntimeError("Producer not started")

        await self._producer.send_and_wait(topic, value=event, key=key)
        logger.debug(f"Published to {topic}: {event.get('event_type', 'unknown')}")


# Event types
class EventTypes:
    INVENTORY_RESERVED = "inventory.reserved"
    INVENTORY_RELEASED = "inventory.released"
    INVENTORY_CONSUMED = "inventory.consumed"
    INVENTORY_EXPIRED = "inventory.expired"
    INVENTORY_EXTENDED = "inventory.extended"
    INVENTORY_ADJUSTED = "inventory.adjusted"


# Kafka topics
class Topics:
    INVENTORY = "inventory"
