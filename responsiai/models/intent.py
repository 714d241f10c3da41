"""
responsiai/models/intent.py

Side effects described as data. Produced by the state machine and the
usage meter, drained by the notification dispatcher.
"""

from enum import Enum
from typing import Any, Dict
from pydantic import BaseModel, ConfigDict, Field


class IntentKind(str, Enum):
    SUBSCRIPTION_ACTIVATED = "SubscriptionActivated"
    PAYMENT_FAILED = "PaymentFailed"
    CANCELLATION_SCHEDULED = "CancellationScheduled"
    CANCELLATION_REVERSED = "CancellationReversed"
    SUBSCRIPTION_CANCELED = "SubscriptionCanceled"
    USAGE_THRESHOLD_REACHED = "UsageThresholdReached"


class Intent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: IntentKind
    user_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
