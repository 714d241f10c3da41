"""
responsiai/models/event.py

Verified webhook envelope and the processed-event log entry.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class VerifiedEvent(BaseModel):
    """Authenticated, parsed webhook event. payload is the processor's data.object."""
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    occurred_at: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)


class ProcessedEventStatus(str, Enum):
    PROCESSING = "processing"
    PROCESSED = "processed"


class ProcessedEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    status: ProcessedEventStatus
    claimed_at: datetime
    processed_at: Optional[datetime] = None
    outcome: Optional[str] = None
