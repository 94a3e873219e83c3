"""
Reconciliation errors.

ValidationError and NotFoundError also derive from ValueError / LookupError
so callers that only know the builtin types still handle them.
"""

from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base class for all reconciliation failures."""

    error_code = "reconciliation_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def context(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_code, "message": self.message, **self.context()}


class ValidationError(ReconciliationError, ValueError):
    """Malformed amount, date, identifier or status."""

    error_code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        super().__init__(message)
        self.field = field
        self.value = value

    def context(self) -> Dict[str, Any]:
        ctx: Dict[str, Any] = {"parameter": self.field}
        if self.value is not None:
            ctx["received_value"] = str(self.value)[:100]
        return ctx


class RowParseError(ValidationError):
    """A single ingestion row that cannot be used."""

    error_code = "row_parse_error"

    def __init__(self, row_number: int, reason: str, field: Optional[str] = None, value: Any = None):
        super().__init__(f"Row {row_number}: {reason}", field=field, value=value)
        self.row_number = row_number
        self.reason = reason

    def context(self) -> Dict[str, Any]:
        return {**super().context(), "row_number": self.row_number}


class NotFoundError(ReconciliationError, LookupError):
    error_code = "not_found"
    entity = "resource"

    def __init__(self, entity_id: str):
        super().__init__(f"{self.entity.capitalize()} {entity_id} not found")
        self.entity_id = entity_id

    def context(self) -> Dict[str, Any]:
        return {"entity": self.entity, "entity_id": self.entity_id}


class TransactionNotFoundError(NotFoundError):
    entity = "transaction"


class InvoiceNotFoundError(NotFoundError):
    entity = "invoice"


class BatchNotFoundError(NotFoundError):
    entity = "batch"


class InvalidTransitionError(ReconciliationError):
    """The transaction's current status does not allow the requested action."""

    error_code = "invalid_transition"

    def __init__(self, transaction_id: str, from_status: str, action: str, reason: str):
        super().__init__(f"Cannot {action} transaction {transaction_id} in status '{from_status}': {reason}")
        self.transaction_id = transaction_id
        self.from_status = from_status
        self.action = action

    def context(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "from_status": self.from_status,
            "action": self.action,
        }
