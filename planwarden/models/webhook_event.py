"""
planwarden/models/webhook_event.py

Ledger row for a provider webhook event.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


class WebhookEventStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class WebhookOutcome(str, Enum):
    """What the ingress did with a delivery. All of these are acknowledged."""
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"
    UNKNOWN_SUBJECT = "unknown_subject"


class WebhookEventRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    processed_at: datetime
    payload: Optional[Dict[str, Any]] = None
    status: WebhookEventStatus = WebhookEventStatus.SUCCESS
    error_message: Optional[str] = None


class WebhookResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    outcome: WebhookOutcome
