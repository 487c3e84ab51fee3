import asyncio
import json
import logging
from typing import Any, Optional

from aiokafka import AIOKafkaProducer

from .config import settings
from .rooms import user_room

# Set up logger
logger = logging.getLogger("adbooking")

# Process-wide producer, started and stopped by the app lifespan
producer: AIOKafkaProducer | None = None

STATUS_CHANGED = "application:statusChanged"
APPLICATION_UPDATED = "application:updated"


async def connect_to_kafka():
    """
    Starts the shared producer. Realtime delivery is best-effort, so a broker
    that is down only disables pushes; the service keeps running.
    """
    global producer
    logger.info("Connecting to Kafka...")
    candidate = AIOKafkaProducer(
        bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
        request_timeout_ms=int(settings.REALTIME_PUBLISH_TIMEOUT_SECONDS * 1000),
    )
    try:
        await asyncio.wait_for(candidate.start(), timeout=settings.REALTIME_PUBLISH_TIMEOUT_SECONDS * 3)
        producer = candidate
        logger.info("Connected to Kafka successfully.")
    except Exception as e:
        logger.error(f"Failed to connect to Kafka: {e}. Realtime pushes are disabled.")
        try:
            await candidate.stop()
        except Exception as stop_error:
            logger.warning(f"Error stopping half-started Kafka producer: {stop_error}")


async def close_kafka_connection():
    global producer
    if producer:
        logger.info("Closing Kafka connection...")
        await producer.stop()
        producer = None
        logger.info("Kafka connection closed.")


async def publish_event(event: str, data: dict[str, Any], room: Optional[str] = None) -> bool:
    """
    Hands one realtime event to the relay. room=None means every connected client.
    Never raises: failures are logged and reported as False.
    """
    if producer is None:
        logger.warning(f"Kafka producer not available, dropping realtime event '{event}'.")
        return False

    envelope = {"event": event, "room": room, "data": data}
    try:
        await asyncio.wait_for(
            producer.send_and_wait(
                settings.KAFKA_REALTIME_TOPIC,
                json.dumps(envelope, default=str).encode("utf-8"),
            ),
            timeout=settings.REALTIME_PUBLISH_TIMEOUT_SECONDS,
        )
        logger.info(f"Published '{event}' to {room or 'all clients'}.")
        return True
    except Exception as e:
        logger.error(f"Failed to publish realtime event '{event}': {e}")
        return False


async def send_notification_to_user(user_id: int, notification: dict[str, Any]) -> bool:
    return await publish_event("notification", notification, room=user_room(user_id))


async def send_room_message(room_id: str, message: dict[str, Any]) -> bool:
    return await publish_event("message", message, room=room_id)


async def broadcast_status_changed(application_id: str, status: str, updated_by: Optional[int]) -> bool:
    return await publish_event(
        STATUS_CHANGED,
        {"applicationId": application_id, "status": status, "updatedBy": updated_by},
    )


async def broadcast_application_updated(application_id: str, **fields: Any) -> bool:
    return await publish_event(APPLICATION_UPDATED, {"applicationId": application_id, **fields})
