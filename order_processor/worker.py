"""
Order Processor Worker - Azure Service Bus Topic Consumer

Entry point for the KEDA-scaled consumer process.
Listens for order messages on a topic subscription and processes them
until the host asks the process to shut down.

Usage:
    python -m order_processor.worker
"""
from .core.config import get_settings
from .core.connection import resolve_connection_string
from .schemas.messages import MessageHandlerOptions
from .services.shutdown import ShutdownCoordinator
from .services.subscription_consumer import SubscriptionConsumer


def main():
    print("[WORKER] Order processor starting...", flush=True)
    settings = get_settings()

    # Fatal: no consumer is created without a valid connection string
    connection_string = resolve_connection_string(settings.keda_servicebus_topic_connectionstring)

    consumer = SubscriptionConsumer(
        connection_string,
        settings.topic_name,
        settings.subscription_name,
        options=MessageHandlerOptions(
            max_concurrent_handlers=settings.max_concurrent_handlers,
            auto_complete=settings.auto_complete,
        ),
        processing_delay=settings.processing_delay,
        max_wait_time=settings.max_wait_time,
        reconnect_delay=settings.reconnect_delay,
        close_timeout=settings.close_timeout,
    )

    coordinator = ShutdownCoordinator(grace_period=settings.shutdown_grace_period)
    coordinator.install_signal_handlers()

    try:
        consumer.start()
    except Exception:
        # A signal may already have arrived; the host must not wait forever
        coordinator.release()
        raise

    coordinator.run(consumer.close)
    print("[WORKER] Stopped", flush=True)


if __name__ == "__main__":
    main()
