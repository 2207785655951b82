import logging
from typing import Any, Optional

from .models import AuditRecord, RequestContext
from .storage import TransactionStore

logger = logging.getLogger(__name__)


class AuditTrail:
    """Administrative activity log, kept alongside the transactions it describes."""

    def __init__(self, store: TransactionStore):
        self.store = store

    def record(
        self,
        context: RequestContext,
        action: str,
        description: str,
        old_values: Optional[dict[str, Any]] = None,
        new_values: Optional[dict[str, Any]] = None,
    ) -> AuditRecord:
        record = AuditRecord(
            actor_id=context.actor_id,
            action=action,
            description=description,
            old_values=old_values,
            new_values=new_values,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        self.store.add_audit_record(record)
        logger.info(f"[audit] {action} by {context.actor_id}: {description}")
        return record
