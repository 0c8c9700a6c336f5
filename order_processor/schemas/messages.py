"""
Pydantic schemas for message handling
"""
from pydantic import BaseModel, Field


class MessageHandlerOptions(BaseModel):
    """How the consumer drives the message handler"""
    max_concurrent_handlers: int = Field(default=1, ge=1, description="Max in-flight handler calls")
    auto_complete: bool = Field(
        default=True,
        description="Complete the message after the handler returns without error",
    )


class ExceptionContext(BaseModel):
    """Where a fault happened, for troubleshooting"""
    endpoint: str = ""
    entity_path: str = ""
    action: str = Field(..., description="e.g. 'Receive', 'UserCallback', 'Complete'")


def describe_message(message) -> str:
    """Log form of a received message: sequence number and UTF-8 body"""
    try:
        body = str(message)
    except UnicodeDecodeError:
        body = "<non UTF-8 body>"
    return f"SequenceNumber:{message.sequence_number} Body:{body}"
