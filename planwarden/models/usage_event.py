"""
planwarden/models/usage_event.py

UsageEvent model: one row per quota-counted record a user created.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict


class UsageEvent(BaseModel):
    """
    UsageEvent tracks a usage occurrence.

    Usage Keys:
    - attendance: User recorded a match attendance (free plan quota)

    Metadata can include the id of the created record.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    usage_key: str
    occurred_at: datetime
    metadata: Optional[Dict[str, Any]] = None
