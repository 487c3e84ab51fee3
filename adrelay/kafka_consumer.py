import asyncio
import json
import logging

from aiokafka import AIOKafkaConsumer

from .config import settings
from .connection_manager import ConnectionManager

logger = logging.getLogger("relay_consumer")


async def dispatch_event(manager: ConnectionManager, message: dict) -> int:
    """
    Delivers one realtime envelope. A room-less event goes to every connection.
    """
    event = message.get("event")
    if not event:
        logger.warning(f"Skipping malformed event: {message}")
        return 0

    room = message.get("room")
    data = message.get("data")
    if room:
        delivered = await manager.broadcast_room(room, event, data)
    else:
        delivered = await manager.broadcast_all(event, data)
    logger.info(f"Delivered '{event}' to {delivered} connection(s) in {room or 'all rooms'}.")
    return delivered


async def consume_realtime_events(manager: ConnectionManager):
    """
    Consumes realtime events from the workflow service and fans them out.

    Every relay instance reads the whole topic on its own: no consumer group,
    no committed offsets, starting from the newest event. A lost broker
    connection is retried with a doubling delay until the task is cancelled.
    """
    delay = settings.KAFKA_RETRY_SECONDS
    while True:
        consumer = AIOKafkaConsumer(
            settings.KAFKA_REALTIME_TOPIC,
            bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
            group_id=None,
            # Live pushes only matter to clients connected right now
            auto_offset_reset="latest",
        )
        try:
            logger.info("Starting Kafka consumer...")
            await consumer.start()
            logger.info("Kafka consumer started. Listening for realtime events...")
            delay = settings.KAFKA_RETRY_SECONDS

            async for msg in consumer:
                try:
                    message = json.loads(msg.value.decode("utf-8"))
                    await dispatch_event(manager, message)
                except json.JSONDecodeError:
                    logger.error(f"Failed to decode message: {msg.value}")
                except Exception as e:
                    logger.error(f"Error processing message: {e}")
        except Exception as e:
            logger.error(f"Kafka consumer failed: {e}")
        finally:
            logger.info("Stopping Kafka consumer...")
            await consumer.stop()

        logger.info(f"Reconnecting to Kafka in {delay} seconds...")
        await asyncio.sleep(delay)
        delay = min(delay * 2, settings.KAFKA_RETRY_MAX_SECONDS)
