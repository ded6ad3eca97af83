import json
from datetime import datetime, timezone
from kafka import KafkaProducer
from kafka.errors import KafkaError
from storefront.core.config import settings
from storefront.core.logger import setup_logger

logger = setup_logger(__name__)

_producer = None

def get_producer() -> KafkaProducer:
    global _producer
    if _producer is None:
        _producer = KafkaProducer(
            bootstrap_servers=[settings.KAFKA_BOOTSTRAP],
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda v: (v.encode("utf-8") if isinstance(v, str) else v),
            linger_ms=5,
            retries=3,
        )
    return _producer

def send(topic: str, key: str, value: dict):
    p = get_producer()
    p.send(topic, key=key, value=value)
    p.flush(5)

def emit(event_type: str, order_id: str, payload: dict | None = None) -> bool:
    """Publish an order lifecycle event. Never raises; events are best-effort."""
    if not settings.EVENTS_ENABLED:
        return False
    event = {
        "type": event_type,
        "order_id": order_id,
        "at": datetime.now(timezone.utc).isoformat(),
        **(payload or {}),
    }
    try:
        send(settings.TOPIC_ORDER_EVENTS, key=order_id, value=event)
    except KafkaError as e:
        logger.warning(f"Event {event_type} for {order_id} not published: {e}")
        return False
    return True
