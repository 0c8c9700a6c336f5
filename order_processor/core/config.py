"""
Worker configuration

All values come from environment variables (or a local .env file).
KEDA injects the topic connection string into the container as:
  KEDA_SERVICEBUS_TOPIC_CONNECTIONSTRING=Endpoint=sb://...;SharedAccessKeyName=...;SharedAccessKey=...;EntityPath=orders
"""
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Worker settings"""

    # Azure Service Bus
    # Must end with ";EntityPath=<topic>", the segment is stripped before connecting
    keda_servicebus_topic_connectionstring: str = ""
    topic_name: str = "orders"
    subscription_name: str = "sbtopic-sub1"

    # Message handling
    max_concurrent_handlers: int = 1  # 1 = strictly serial processing
    auto_complete: bool = True  # complete the message once the handler returns
    processing_delay: float = 2.0  # seconds of simulated work per message

    # Receive loop
    max_wait_time: int = 30  # long poll, seconds
    reconnect_delay: float = 5.0  # seconds to wait after a Service Bus error

    # Shutdown
    shutdown_grace_period: float = 5.0  # seconds before confirming exit to the host
    close_timeout: float = 30.0

    model_config = SettingsConfigDict(env_file=".env")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
