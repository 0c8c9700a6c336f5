"""
Order generator

Sends a burst of order messages to the topic so there is something for
KEDA to scale on.

Usage:
    python -m order_processor.publisher --count 100
"""
import argparse
import json
import uuid
from datetime import datetime, timezone

from azure.servicebus import ServiceBusClient, ServiceBusMessage

from .core.config import get_settings
from .core.connection import resolve_connection_string


def build_order(index: int) -> ServiceBusMessage:
    order = {
        "id": str(uuid.uuid4()),
        "index": index,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    return ServiceBusMessage(json.dumps(order), content_type="application/json")


def publish_orders(connection_string: str, topic_name: str, count: int) -> int:
    """Send `count` orders in batches, returns the number sent"""
    sent = 0
    with ServiceBusClient.from_connection_string(connection_string) as client:
        with client.get_topic_sender(topic_name=topic_name) as sender:
            batch = sender.create_message_batch()
            for index in range(count):
                message = build_order(index)
                try:
                    batch.add_message(message)
                except ValueError:
                    # Batch full: flush and start a new one
                    sender.send_messages(batch)
                    sent += len(batch)
                    batch = sender.create_message_batch()
                    batch.add_message(message)
            if len(batch):
                sender.send_messages(batch)
                sent += len(batch)
    return sent


def main(argv=None):
    parser = argparse.ArgumentParser(description="Send order messages to the Service Bus topic")
    parser.add_argument("--count", type=int, default=10, help="Number of orders to send")
    parser.add_argument("--topic", type=str, default=None, help="Topic name (default: TOPIC_NAME)")
    args = parser.parse_args(argv)

    settings = get_settings()
    connection_string = resolve_connection_string(settings.keda_servicebus_topic_connectionstring)
    topic_name = args.topic or settings.topic_name

    sent = publish_orders(connection_string, topic_name, args.count)
    print(f"[PUBLISHER] Sent {sent} order(s) to topic '{topic_name}'", flush=True)


if __name__ == "__main__":
    main()
