"""
Azure Service Bus Subscription Consumer for the order processor

Receives messages from a topic subscription and hands each one to a
message handler. At most `max_concurrent_handlers` handler calls are in
flight at any time (1 = strictly serial).

The consumer owns its own asyncio loop, running on a background thread,
so the main thread is free to block while waiting for a shutdown signal.

Settlement:
  - handler returns        -> complete (when auto_complete is on)
  - handler raises         -> report + abandon (broker redelivers)
  - handler interrupted    -> abandon (another replica picks it up)
"""
import asyncio
import re
import threading
from typing import Awaitable, Callable, Optional

from azure.servicebus.aio import ServiceBusClient

from ..core.connection import redact_connection_string
from ..schemas.messages import ExceptionContext, MessageHandlerOptions, describe_message


ENDPOINT_PATTERN = re.compile(r"Endpoint=(?P<endpoint>[^;]*)", re.IGNORECASE)

MessageHandler = Callable[[object, asyncio.Event], Awaitable[None]]


class ProcessingCancelled(Exception):
    """Raised by a handler that stopped early because the consumer is closing"""


class SubscriptionConsumer:
    """
    Long-lived consumer bound to one topic/subscription pair.

    Usage:
        consumer = SubscriptionConsumer(connection_string, "orders", "sbtopic-sub1")
        consumer.start()   # returns once the receiver link is open
        ...
        consumer.close()   # returns once the connection is released
    """

    def __init__(
        self,
        connection_string: str,
        topic_name: str,
        subscription_name: str,
        options: Optional[MessageHandlerOptions] = None,
        handler: Optional[MessageHandler] = None,
        processing_delay: float = 2.0,
        max_wait_time: int = 30,
        reconnect_delay: float = 5.0,
        close_timeout: float = 30.0,
    ):
        self.connection_string = connection_string
        self.topic_name = topic_name
        self.subscription_name = subscription_name
        self.options = options or MessageHandlerOptions()
        self.handler = handler or self.process_message
        self.processing_delay = processing_delay
        self.max_wait_time = max_wait_time
        self.reconnect_delay = reconnect_delay
        self.close_timeout = close_timeout

        match = ENDPOINT_PATTERN.search(connection_string)
        self.endpoint = match.group("endpoint") if match else redact_connection_string(connection_string)
        self.entity_path = f"{topic_name}/Subscriptions/{subscription_name}"

        self.servicebus_client: Optional[ServiceBusClient] = None
        self.receiver = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._started = threading.Event()
        self._startup_error: Optional[BaseException] = None
        self._close_error: Optional[BaseException] = None
        self._loop_lock = threading.Lock()
        self._stop: Optional[asyncio.Event] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle (called from the main thread)
    # ------------------------------------------------------------------

    def start(self):
        """Open the subscription and start pumping messages"""
        self._thread = threading.Thread(
            target=self._run_loop, name="subscription-consumer", daemon=True
        )
        self._thread.start()
        self._started.wait()
        if self._startup_error is not None:
            raise self._startup_error

    def close(self):
        """
        Stop receiving, let in-flight handlers finish (they are told to
        stop early), then close receiver and client. Blocks until done.
        """
        if self._closed:
            return
        self._closed = True

        if self._thread is None:
            return

        with self._loop_lock:
            if self._loop is not None and not self._loop.is_closed():
                self._loop.call_soon_threadsafe(self.stop)

        self._thread.join(self.close_timeout)
        if self._thread.is_alive():
            raise TimeoutError(
                f"Subscription consumer did not close within {self.close_timeout}s"
            )
        if self._close_error is not None:
            raise self._close_error

    def stop(self):
        """Ask the pump to stop. Must run on the consumer loop."""
        if self._stop is not None:
            self._stop.set()

    def _run_loop(self):
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._main())
        finally:
            with self._loop_lock:
                self._loop.close()
            self._started.set()

    async def _main(self):
        self._stop = asyncio.Event()
        try:
            async with ServiceBusClient.from_connection_string(self.connection_string) as client:
                self.servicebus_client = client
                async with client.get_subscription_receiver(
                    topic_name=self.topic_name,
                    subscription_name=self.subscription_name,
                    max_wait_time=self.max_wait_time,
                ) as receiver:
                    self.receiver = receiver
                    print("[CONSUMER] Connected to Azure Service Bus", flush=True)
                    print(
                        f"[CONSUMER] Listening on {self.entity_path} "
                        f"(max_concurrent_handlers={self.options.max_concurrent_handlers}, "
                        f"auto_complete={self.options.auto_complete})",
                        flush=True,
                    )
                    self._started.set()
                    await self.run(receiver)
        except Exception as e:
            if not self._started.is_set():
                self._startup_error = e
                return
            print(f"[CONSUMER] Consumer stopped with error: {e!r}", flush=True)
            self._close_error = e
            return
        print("[CONSUMER] Service Bus connection closed", flush=True)

    # ------------------------------------------------------------------
    # Message pump (runs on the consumer loop)
    # ------------------------------------------------------------------

    async def run(self, receiver):
        """Receive and dispatch messages until stop() is called"""
        if self._stop is None:
            self._stop = asyncio.Event()

        slots = asyncio.Semaphore(self.options.max_concurrent_handlers)
        in_flight = set()

        while not self._stop.is_set():
            try:
                messages = await self._receive(receiver)
            except Exception as e:
                self.report_exception(e, self._context("Receive"))
                await self._sleep_unless_stopped(self.reconnect_delay)
                continue

            for message in messages:
                await slots.acquire()
                if self._stop.is_set():
                    slots.release()
                    await self._settle(receiver.abandon_message, message, "Abandon")
                    continue
                task = asyncio.create_task(self._dispatch(receiver, message, slots))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)

        if in_flight:
            print(f"[CONSUMER] Waiting for {len(in_flight)} in-flight message(s)", flush=True)
            await asyncio.gather(*in_flight)

    async def _receive(self, receiver) -> list:
        receive = asyncio.ensure_future(
            receiver.receive_messages(
                max_message_count=self.options.max_concurrent_handlers,
                max_wait_time=self.max_wait_time,
            )
        )
        stopped = asyncio.ensure_future(self._stop.wait())
        done, _ = await asyncio.wait({receive, stopped}, return_when=asyncio.FIRST_COMPLETED)

        if receive in done:
            stopped.cancel()
            return receive.result()

        # Unsettled messages from a cancelled receive come back after their lock expires
        receive.cancel()
        await asyncio.gather(receive, return_exceptions=True)
        return []

    async def _dispatch(self, receiver, message, slots: asyncio.Semaphore):
        try:
            await self.handler(message, self._stop)
        except ProcessingCancelled:
            print(
                f"[CONSUMER] Message {message.sequence_number} interrupted by shutdown, abandoning",
                flush=True,
            )
            await self._settle(receiver.abandon_message, message, "Abandon")
        except Exception as e:
            self.report_exception(e, self._context("UserCallback"))
            await self._settle(receiver.abandon_message, message, "Abandon")
        else:
            if self.options.auto_complete:
                await self._settle(receiver.complete_message, message, "Complete")
        finally:
            slots.release()

    async def _settle(self, operation, message, action: str):
        try:
            await operation(message)
        except Exception as e:
            self.report_exception(e, self._context(action))

    async def _sleep_unless_stopped(self, seconds: float):
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def complete_message(self, message):
        """Settle a message by hand, for handlers running with auto_complete off"""
        await self.receiver.complete_message(message)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    async def process_message(self, message, cancel_event: asyncio.Event):
        """Default handler: log the message and simulate some work"""
        print(f"[CONSUMER] Received message: {describe_message(message)}", flush=True)

        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=self.processing_delay)
        except asyncio.TimeoutError:
            return
        raise ProcessingCancelled(f"message {message.sequence_number}")

    def report_exception(self, exception: BaseException, context: ExceptionContext):
        """Log a fault with its context. Never raises."""
        try:
            print(f"[CONSUMER] Message handler encountered an exception {exception!r}.", flush=True)
            print("[CONSUMER] Exception context for troubleshooting:", flush=True)
            print(f"[CONSUMER] - Endpoint: {context.endpoint}", flush=True)
            print(f"[CONSUMER] - Entity Path: {context.entity_path}", flush=True)
            print(f"[CONSUMER] - Executing Action: {context.action}", flush=True)
        except Exception as e:
            print(f"[CONSUMER] Failed to report exception: {type(e).__name__}", flush=True)

    def _context(self, action: str) -> ExceptionContext:
        return ExceptionContext(endpoint=self.endpoint, entity_path=self.entity_path, action=action)
