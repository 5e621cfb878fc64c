"""
安全审计 Schemas
"""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from verigate.models.security_log import SecurityEventType
from verigate.utils.identifier import Identifier


class SecurityEventCreate(BaseModel):
    """待写入的安全事件"""
    event_type: SecurityEventType
    user_id: Optional[str] = None
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_identifier(
        cls,
        identifier: Identifier,
        event_type: SecurityEventType,
        **kwargs: Any,
    ) -> "SecurityEventCreate":
        if kwargs.get("metadata") is None:
            kwargs.pop("metadata", None)
        return cls(event_type=event_type, **identifier.event_fields(), **kwargs)


class SecurityEventRecord(BaseModel):
    id: str
    user_id: Optional[str] = None
    email: Optional[str] = None
    event_type: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class SecurityStatistics(BaseModel):
    total_events: int = 0
    verifications_sent: int = 0
    verifications_succeeded: int = 0
    verifications_failed: int = 0
    account_locked: bool = False
    last_lockout_at: Optional[datetime] = None
