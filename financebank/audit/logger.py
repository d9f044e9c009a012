"""
Audit Logger

DESIGN DECISION: Every balance change and every rejected attempt is logged.
This provides:
1. Complete traceability of money movement
2. Debugging capability when a transfer fails
3. A history the user can be shown

The audit logger:
- Always writes a structured local log line
- Persists to audit storage when one is configured
- Never lets an audit failure break the ledger operation it describes
- Supports correlation IDs to tie together the events of one operation
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from financebank.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from financebank.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence and user visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("financebank.audit")

    @property
    def storage(self) -> Optional[AuditStorageInterface]:
        return self._storage

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_transaction_recorded(
        self,
        user_id: str,
        reference_number: str,
        transaction_type: str,
        amount: Decimal,
        category: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_recorded(
            user_id=user_id,
            reference_number=reference_number,
            transaction_type=transaction_type,
            amount=str(amount),
            category=category,
            correlation_id=correlation_id,
        ))

    async def log_transfer_completed(
        self,
        user_id: str,
        reference_number: str,
        from_account: str,
        to_account: str,
        amount: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transfer_completed(
            user_id=user_id,
            reference_number=reference_number,
            from_account=from_account,
            to_account=to_account,
            amount=str(amount),
            correlation_id=correlation_id,
        ))

    async def log_external_payment(
        self,
        user_id: str,
        reference_number: str,
        recipient: str,
        amount: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.external_payment_sent(
            user_id=user_id,
            reference_number=reference_number,
            recipient=recipient,
            amount=str(amount),
            correlation_id=correlation_id,
        ))

    async def log_rejected(
        self,
        user_id: str,
        operation: str,
        error: Exception,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a ledger operation that was refused or failed."""
        await self.log(AuditEventBuilder.transaction_rejected(
            user_id=user_id,
            operation=operation,
            error=error,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of each ledger operation.
    """
    return uuid4()
