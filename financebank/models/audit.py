"""
Audit Models for the FinanceBank Ledger

Every money movement and every rejected attempt is logged for audit purposes.
This provides:
1. Complete traceability of all balance changes
2. Debugging information when a transfer fails
3. Ability to reconstruct what the user saw

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from financebank.models.ledger import utc_now


class AuditEventType(str, Enum):
    """Types of ledger events we audit."""
    # Accounts
    ACCOUNTS_PROVISIONED = "accounts_provisioned"
    ACCOUNT_OPENED = "account_opened"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    PRIMARY_ACCOUNT_CHANGED = "primary_account_changed"

    # Money movement
    TRANSACTION_RECORDED = "transaction_recorded"
    TRANSFER_COMPLETED = "transfer_completed"
    EXTERNAL_PAYMENT_SENT = "external_payment_sent"
    TRANSACTION_REJECTED = "transaction_rejected"
    TRANSACTION_REPLAYED = "transaction_replayed"
    TRANSACTION_STATUS_CHANGED = "transaction_status_changed"

    # Derived data
    RECENT_ACTIVITY_REBUILT = "recent_activity_rebuilt"
    RECENT_ACTIVITY_FAILED = "recent_activity_failed"

    # System events
    STORAGE_FALLBACK = "storage_fallback"
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    Every significant ledger action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # Context - what entity is this about?
    user_id: Optional[str] = None
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'account', 'transaction')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID or reference number of the entity"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = None

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(default_factory=dict)

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = False

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def details_json(self) -> str:
        return json.dumps(self.details, default=str) if self.details else ""


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transfer_completed(user_id, reference, ...)
        event = AuditEventBuilder.transaction_rejected(user_id, "transfer", error)
    """

    @staticmethod
    def accounts_provisioned(
        user_id: str,
        account_names: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCOUNTS_PROVISIONED,
            user_id=user_id,
            entity_type="user",
            entity_id=user_id,
            correlation_id=correlation_id,
            description=f"Provisioned {len(account_names)} starter accounts",
            details={"accounts": account_names},
        )

    @staticmethod
    def account_opened(
        user_id: str,
        account_id: UUID,
        name: str,
        kind: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCOUNT_OPENED,
            user_id=user_id,
            entity_type="account",
            entity_id=str(account_id),
            correlation_id=correlation_id,
            description=f"Account opened: {name}",
            details={"kind": kind},
            is_user_action=True,
        )

    @staticmethod
    def account_deactivated(
        user_id: str,
        account_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCOUNT_DEACTIVATED,
            user_id=user_id,
            entity_type="account",
            entity_id=str(account_id),
            correlation_id=correlation_id,
            description="Account deactivated",
            is_user_action=True,
        )

    @staticmethod
    def primary_account_changed(
        user_id: str,
        account_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PRIMARY_ACCOUNT_CHANGED,
            user_id=user_id,
            entity_type="account",
            entity_id=str(account_id),
            correlation_id=correlation_id,
            description="Primary account changed",
            is_user_action=True,
        )

    @staticmethod
    def transaction_recorded(
        user_id: str,
        reference_number: str,
        transaction_type: str,
        amount: str,
        category: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_RECORDED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=reference_number,
            correlation_id=correlation_id,
            description=f"{transaction_type.capitalize()} recorded: {amount} ({category})",
            details={
                "type": transaction_type,
                "amount": amount,
                "category": category,
            },
            is_user_action=True,
        )

    @staticmethod
    def transfer_completed(
        user_id: str,
        reference_number: str,
        from_account: str,
        to_account: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSFER_COMPLETED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=reference_number,
            correlation_id=correlation_id,
            description=f"Transferred {amount} from {from_account} to {to_account}",
            details={
                "from_account": from_account,
                "to_account": to_account,
                "amount": amount,
            },
            is_user_action=True,
        )

    @staticmethod
    def external_payment_sent(
        user_id: str,
        reference_number: str,
        recipient: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_PAYMENT_SENT,
            user_id=user_id,
            entity_type="transaction",
            entity_id=reference_number,
            correlation_id=correlation_id,
            description=f"Sent {amount} to {recipient}",
            details={
                "recipient": recipient,
                "amount": amount,
            },
            is_user_action=True,
        )

    @staticmethod
    def transaction_rejected(
        user_id: str,
        operation: str,
        error: Exception,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_REJECTED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="operation",
            entity_id=operation,
            correlation_id=correlation_id,
            description=f"{operation} rejected: {error}"[:500],
            error_code=type(error).__name__,
            error_message=str(error),
            is_user_action=True,
        )

    @staticmethod
    def transaction_replayed(
        user_id: str,
        reference_number: str,
        idempotency_key: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_REPLAYED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=reference_number,
            correlation_id=correlation_id,
            description="Duplicate request answered with the original transaction",
            details={"idempotency_key": idempotency_key},
        )

    @staticmethod
    def transaction_status_changed(
        user_id: str,
        reference_number: str,
        old_status: str,
        new_status: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_STATUS_CHANGED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=reference_number,
            correlation_id=correlation_id,
            description=f"Status changed: {old_status} -> {new_status}",
            details={"from": old_status, "to": new_status},
        )

    @staticmethod
    def recent_activity_rebuilt(
        user_id: str,
        recipients: int,
        transfers: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECENT_ACTIVITY_REBUILT,
            user_id=user_id,
            entity_type="user",
            entity_id=user_id,
            description=f"Recent activity rebuilt ({recipients} recipients, {transfers} transfers)",
            details={"recipients": recipients, "transfers": transfers},
        )

    @staticmethod
    def recent_activity_failed(
        user_id: str,
        reference_number: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECENT_ACTIVITY_FAILED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="transaction",
            entity_id=reference_number,
            correlation_id=correlation_id,
            description="Could not update recent activity summaries",
            error_message=error_message,
        )

    @staticmethod
    def storage_fallback(reason: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STORAGE_FALLBACK,
            severity=AuditSeverity.WARNING,
            description="Database unavailable, running on the local demo store",
            error_message=reason,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
