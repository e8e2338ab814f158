from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import func, insert, select

from infra.clock import Clock, utcnow
from infra.logging_config import get_logger
from infra.schema import invite_event_logs
from infra.store import Store

from .models import InviteEventType, RegistrationMetadata


class InviteEventLog:
    """Append-only audit trail in `invite_event_logs`.

    Registration rows also carry the request metadata the abuse scorer reads
    back (IP, user agent, device fingerprint).
    """

    def __init__(self, store: Store, clock: Clock = utcnow, logger=None):
        self.store = store
        self.clock = clock
        self.logger = logger or get_logger(__name__)

    def record(
        self,
        event_type: InviteEventType,
        inviter_id: Optional[str] = None,
        invitee_id: Optional[str] = None,
        invite_code_id: Optional[str] = None,
        metadata: Optional[RegistrationMetadata] = None,
        risk_score: Optional[float] = None,
        payload: Optional[dict] = None,
    ) -> str:
        event_id = str(uuid4())
        metadata = metadata or RegistrationMetadata()
        self.store.execute(
            insert(invite_event_logs).values(
                id=event_id,
                event_type=event_type.value,
                inviter_id=inviter_id,
                invitee_id=invitee_id,
                invite_code_id=invite_code_id,
                ip_address=metadata.ip_address,
                user_agent=metadata.user_agent,
                device_fingerprint=metadata.device_fingerprint,
                risk_score=risk_score,
                payload=payload,
                created_at=self.clock(),
            )
        )
        return event_id

    def count_from_ip(self, ip_address: str, since: datetime, event_type: InviteEventType = InviteEventType.REGISTRATION) -> int:
        rows = self.store.query(
            select(func.count().label("count")).where(
                invite_event_logs.c.ip_address == ip_address,
                invite_event_logs.c.event_type == event_type.value,
                invite_event_logs.c.created_at > since,
            )
        )
        return int(rows[0]["count"])
