"""
Connection string resolution

KEDA hands out entity-scoped connection strings that end with
";EntityPath=<topic>". The Service Bus client wants the namespace-level
string plus an explicit topic, so the EntityPath segment is stripped here.
"""
import re
from typing import Optional


ENTITY_PATH_PATTERN = re.compile(r"(?P<endpoint>.*);EntityPath=.*", re.DOTALL)
SECRET_PATTERN = re.compile(r"(SharedAccessKey|SharedAccessSignature)=[^;]*", re.IGNORECASE)


class ConfigurationError(Exception):
    """Raised when the worker cannot start because of missing or invalid settings"""


def redact_connection_string(connection_string: str) -> str:
    """Mask secret values so the string can be printed"""
    return SECRET_PATTERN.sub(lambda m: f"{m.group(1)}=***", connection_string)


def resolve_connection_string(raw: Optional[str]) -> str:
    """
    Strip the trailing ";EntityPath=..." segment from a KEDA connection string.

    "sb://host/;EntityPath=orders" -> "sb://host/"

    Raises ConfigurationError when the value is missing or has no
    ";EntityPath=" segment.
    """
    if not raw:
        raise ConfigurationError("KEDA_SERVICEBUS_TOPIC_CONNECTIONSTRING is not set")

    match = ENTITY_PATH_PATTERN.fullmatch(raw)
    if not match:
        raise ConfigurationError(
            "Connection string does not contain ';EntityPath=' segment at the end of it."
        )

    connection_string = match.group("endpoint")
    print(f"[WORKER] Connection string: {redact_connection_string(connection_string)}", flush=True)
    return connection_string
