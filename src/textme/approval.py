"""Time-bounded yes/no checkpoint for privileged worker actions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from uuid import uuid4

from .commanding import parse_approval
from .models import PendingApproval
from .protocols import StoreProtocol
from .utils import to_iso, utc_now

logger = logging.getLogger("textme.approval")


@dataclass(slots=True)
class ApprovalResolution:
    approval: PendingApproval
    approved: bool


class ApprovalGate:
    def __init__(
        self,
        store: StoreProtocol,
        ttl_minutes: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    def open(
        self,
        sender: str,
        task_id: str,
        command: str,
        ttl: timedelta | None = None,
        allow_rules: str = "",
    ) -> PendingApproval:
        now = self._clock()
        approval = PendingApproval(
            id=f"apr_{uuid4().hex[:10]}",
            task_id=task_id,
            command=command,
            sender=sender,
            created_at=to_iso(now),
            expires_at=to_iso(now + (ttl if ttl is not None else self.ttl)),
            allow_rules=allow_rules,
        )
        self.store.create_approval(approval)
        logger.info("Approval %s opened for task=%s sender=%s command=%r", approval.id, task_id, sender, command)
        return approval

    def active_for(self, sender: str) -> PendingApproval | None:
        return self.store.get_active_approval(sender, to_iso(self._clock()))

    def resolve(self, sender: str, text: str) -> ApprovalResolution | None:
        """Match a yes/no reply against the sender's active approval.

        Returns None when nothing is pending or the text is not a yes/no
        reply; in that case any pending approval stays open.
        """
        approval = self.active_for(sender)
        if approval is None:
            return None
        approved = parse_approval(text)
        if approved is None:
            return None
        if not self.store.delete_approval(approval.id):
            # resolved concurrently
            return None
        logger.info("Approval %s %s by %s", approval.id, "approved" if approved else "rejected", sender)
        return ApprovalResolution(approval=approval, approved=approved)

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_approvals(to_iso(self._clock()))
        if removed:
            logger.info("Swept %d expired approvals", removed)
        return removed
