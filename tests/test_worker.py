import threading
from unittest.mock import Mock

import pytest

from order_processor import worker
from order_processor.core.config import get_settings
from order_processor.core.connection import ConfigurationError
from order_processor.services.shutdown import ShutdownCoordinator


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def consumer_cls(monkeypatch):
    cls = Mock()
    monkeypatch.setattr(worker, "SubscriptionConsumer", cls)
    return cls


@pytest.fixture
def coordinator_cls(monkeypatch):
    cls = Mock()
    cls.return_value.run.side_effect = lambda close: close()
    monkeypatch.setattr(worker, "ShutdownCoordinator", cls)
    return cls


def test_malformed_connection_string_aborts_startup(monkeypatch, consumer_cls, coordinator_cls):
    monkeypatch.setenv("KEDA_SERVICEBUS_TOPIC_CONNECTIONSTRING", "sb://host/")

    with pytest.raises(ConfigurationError):
        worker.main()

    consumer_cls.assert_not_called()


def test_missing_connection_string_aborts_startup(monkeypatch, consumer_cls, coordinator_cls):
    monkeypatch.setenv("KEDA_SERVICEBUS_TOPIC_CONNECTIONSTRING", "")

    with pytest.raises(ConfigurationError):
        worker.main()

    consumer_cls.assert_not_called()


def test_startup_and_shutdown(monkeypatch, consumer_cls, coordinator_cls):
    monkeypatch.setenv("KEDA_SERVICEBUS_TOPIC_CONNECTIONSTRING", "sb://host/;EntityPath=orders")
    monkeypatch.setenv("TOPIC_NAME", "orders")
    monkeypatch.setenv("SUBSCRIPTION_NAME", "sbtopic-sub1")
    monkeypatch.setenv("SHUTDOWN_GRACE_PERIOD", "0")

    worker.main()

    args, kwargs = consumer_cls.call_args
    assert args == ("sb://host/", "orders", "sbtopic-sub1")
    assert kwargs["options"].max_concurrent_handlers == 1
    assert kwargs["options"].auto_complete is True

    consumer = consumer_cls.return_value
    consumer.start.assert_called_once_with()
    consumer.close.assert_called_once_with()
    coordinator_cls.assert_called_once_with(grace_period=0.0)
    coordinator_cls.return_value.install_signal_handlers.assert_called_once_with()


def test_startup_failure_releases_waiting_host(monkeypatch, consumer_cls):
    created = []
    results = {}

    def make_coordinator(**kwargs):
        coordinator = ShutdownCoordinator(**kwargs)
        coordinator.install_signal_handlers = Mock()
        created.append(coordinator)
        return coordinator

    def start():
        # SIGTERM lands while the consumer is still connecting
        coordinator = created[0]
        host = threading.Thread(
            target=lambda: results.update(released=coordinator.on_unloading(timeout=5))
        )
        host.start()
        coordinator.wait_for_signal(timeout=5)
        results["host"] = host
        raise RuntimeError("broker unreachable")

    monkeypatch.setattr(worker, "ShutdownCoordinator", make_coordinator)
    monkeypatch.setenv("KEDA_SERVICEBUS_TOPIC_CONNECTIONSTRING", "sb://host/;EntityPath=orders")
    consumer_cls.return_value.start.side_effect = start

    with pytest.raises(RuntimeError, match="broker unreachable"):
        worker.main()

    results["host"].join(5)
    assert results["released"] is True
