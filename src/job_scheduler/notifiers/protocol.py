from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, Field


class DeliveryResult(BaseModel):
    """
    Outcome of delivering one event. Failures are values, never exceptions.
    """
    delivered: bool = Field(..., description="Whether the endpoint acknowledged the event")
    skipped: bool = Field(False, description="True when no endpoint is configured")
    status_code: Optional[int] = Field(None, description="HTTP status of the last attempt, if any")
    error: Optional[str] = Field(None, description="Failure detail of the last attempt")
    attempts: int = Field(0, description="Number of delivery attempts made")


class Notifier(Protocol):
    async def deliver(self, payload: Dict[str, Any]) -> DeliveryResult:
        """Deliver an event. Must not raise."""
        ...

    async def close(self) -> None:
        """Release any resources held by the notifier."""
        ...
