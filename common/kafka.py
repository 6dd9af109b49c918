from typing import List, Optional

from confluent_kafka import Consumer, Producer

from common.settings import settings

# Settlement notifications, keyed by transaction reference
TOPIC_SHARE_NOTIFICATIONS = "share_notifications"

_producer: Optional[Producer] = None


def get_producer() -> Producer:
    global _producer
    if _producer is None:
        _producer = Producer({
            "bootstrap.servers": settings.kafka_bootstrap,
            "client.id": "share-ledger-service",
            "enable.idempotence": True,
            "acks": "all",
        })
    return _producer


def get_consumer(group_id: str, topics: List[str]) -> Consumer:
    # offsets are committed by hand once a message has been handled
    consumer = Consumer({
        "bootstrap.servers": settings.kafka_bootstrap,
        "group.id": group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": False,
    })
    consumer.subscribe(topics)
    return consumer
