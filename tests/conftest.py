import asyncio

import pytest


class FakeMessage:
    """Stands in for ServiceBusReceivedMessage: sequence number + UTF-8 body"""

    def __init__(self, sequence_number: int, body: str = ""):
        self.sequence_number = sequence_number
        self.body = body

    def __str__(self):
        return self.body


class FakeReceiver:
    """
    Hands out the given batches one receive at a time, then calls
    `on_empty` (usually consumer.stop) and returns nothing.
    """

    def __init__(self, batches, on_empty=None, errors=None):
        self.batches = list(batches)
        self.errors = list(errors or [])
        self.on_empty = on_empty
        self.completed = []
        self.abandoned = []
        self.receive_calls = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True

    async def receive_messages(self, max_message_count=1, max_wait_time=None):
        self.receive_calls.append(max_message_count)
        if self.errors:
            raise self.errors.pop(0)
        if self.batches:
            return self.batches.pop(0)
        if self.on_empty is not None:
            self.on_empty()
        await asyncio.sleep(0.01)
        return []

    async def complete_message(self, message):
        self.completed.append(message.sequence_number)

    async def abandon_message(self, message):
        self.abandoned.append(message.sequence_number)


class FakeServiceBusClient:
    """Async client double: hands out `receiver`, can fail on open or close"""

    def __init__(self, receiver, open_error=None, close_error=None):
        self.receiver = receiver
        self.open_error = open_error
        self.close_error = close_error
        self.receiver_kwargs = None
        self.closed = False

    async def __aenter__(self):
        if self.open_error is not None:
            raise self.open_error
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True
        if self.close_error is not None:
            raise self.close_error

    def get_subscription_receiver(self, **kwargs):
        self.receiver_kwargs = kwargs
        return self.receiver


@pytest.fixture
def anyio_backend():
    """Run async tests on asyncio only"""
    return "asyncio"


@pytest.fixture
def messages():
    return [FakeMessage(n, f'{{"order": {n}}}') for n in range(1, 4)]
