"""Fire-and-forget publication of booking and blackout events to RabbitMQ.

Events are handed to the notification dispatcher after the owning transaction
has committed. Delivery problems are logged and never surface to the caller.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict

import pika
from circuitbreaker import CircuitBreakerError, circuit
from pika.exceptions import AMQPError

from .config import get_settings
from .models import BlackoutPeriod, Booking

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def booking_event(event: str, booking: Booking, **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "event": event,
        "booking_id": booking.id,
        "vehicle_id": booking.vehicle_id,
        "renter_id": booking.renter_id,
        "status": booking.status,
        "start_time": _iso(booking.start_time),
        "end_time": _iso(booking.end_time),
    }
    payload.update(extra)
    return payload


def blackout_event(event: str, blackout: BlackoutPeriod) -> Dict[str, Any]:
    return {
        "event": event,
        "blackout_id": blackout.id,
        "vehicle_id": blackout.vehicle_id,
        "start_time": _iso(blackout.start_time),
        "end_time": _iso(blackout.end_time),
        "reason": blackout.reason,
    }


@circuit(failure_threshold=5, recovery_timeout=60, expected_exception=AMQPError)
def _send(message: Dict[str, Any]) -> None:
    settings = get_settings()
    connection = pika.BlockingConnection(pika.ConnectionParameters(host=settings.rabbitmq_host))
    try:
        channel = connection.channel()
        channel.queue_declare(queue=settings.rabbitmq_queue, durable=True)
        channel.basic_publish(
            exchange="",
            routing_key=settings.rabbitmq_queue,
            body=json.dumps(message),
            properties=pika.BasicProperties(delivery_mode=2),
        )
    finally:
        connection.close()


def publish_event(message: Dict[str, Any]) -> bool:
    """Send one event; returns whether the broker accepted it."""
    if not get_settings().events_enabled:
        logger.debug("Events disabled, dropping %s", message["event"])
        return False
    try:
        _send(message)
    except CircuitBreakerError:
        logger.error("Event broker circuit open, dropped %s", message["event"])
        return False
    except AMQPError as exc:
        logger.error("Could not publish %s: %s", message["event"], exc)
        return False
    logger.info("Published %s", message["event"])
    return True
