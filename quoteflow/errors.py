# quoteflow/errors.py
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional


class QuoteflowError(Exception):
    """
    Base for every failure a core operation can surface.

    Each subclass is scoped to the one quote/job mutation that raised it; the
    HTTP layer renders `code`, `message` and `context()` with `http_status`.
    """

    code = "quoteflow_error"
    http_status = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def context(self) -> dict[str, Any]:
        return {}


class ValidationError(QuoteflowError):
    code = "validation_error"
    http_status = 422

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field

    def context(self) -> dict[str, Any]:
        return {"field": self.field}


class SchemeCoverageError(QuoteflowError):
    code = "scheme_coverage_error"
    http_status = 422

    def __init__(self, category: str, scheme_type: str) -> None:
        super().__init__(f"pricing scheme '{scheme_type}' has no rate for category '{category}'")
        self.category = category
        self.scheme_type = scheme_type

    def context(self) -> dict[str, Any]:
        return {"category": self.category, "scheme_type": self.scheme_type}


class InvalidTransitionError(QuoteflowError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, from_status: str, to_status: str, entity: str = "quote") -> None:
        super().__init__(f"{entity} cannot move from '{from_status}' to '{to_status}'")
        self.from_status = from_status
        self.to_status = to_status
        self.entity = entity

    def context(self) -> dict[str, Any]:
        return {"entity": self.entity, "from": self.from_status, "to": self.to_status}


class InvalidJobStateError(QuoteflowError):
    code = "invalid_job_state"
    http_status = 409

    def __init__(self, status: str, operation: str, reason: Optional[str] = None) -> None:
        msg = f"cannot {operation} while job is '{status}'"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.status = status
        self.operation = operation

    def context(self) -> dict[str, Any]:
        return {"status": self.status, "operation": self.operation}


class PaymentRecordNotFoundError(QuoteflowError):
    code = "payment_record_not_found"
    http_status = 404

    def __init__(self, reference_id: str) -> None:
        super().__init__(f"no payment record for reference '{reference_id}'")
        self.reference_id = reference_id

    def context(self) -> dict[str, Any]:
        return {"reference_id": self.reference_id}


class AmountMismatchError(QuoteflowError):
    code = "amount_mismatch"
    http_status = 409

    def __init__(
        self,
        *,
        reference_id: str,
        expected: Decimal,
        received: Decimal,
        expected_currency: str,
        received_currency: str,
    ) -> None:
        super().__init__(
            f"payment '{reference_id}' received {received} {received_currency}, "
            f"expected {expected} {expected_currency}"
        )
        self.reference_id = reference_id
        self.expected = expected
        self.received = received
        self.expected_currency = expected_currency
        self.received_currency = received_currency

    def context(self) -> dict[str, Any]:
        return {
            "reference_id": self.reference_id,
            "expected": str(self.expected),
            "received": str(self.received),
            "expected_currency": self.expected_currency,
            "received_currency": self.received_currency,
        }


class ConcurrentModificationError(QuoteflowError):
    """Transient: the whole operation is safe to retry."""

    code = "concurrent_modification"
    http_status = 409

    def __init__(self, entity: str, entity_id: Any = None) -> None:
        label = entity if entity_id is None else f"{entity} {entity_id}"
        super().__init__(f"{label} was modified concurrently")
        self.entity = entity
        self.entity_id = entity_id

    def context(self) -> dict[str, Any]:
        return {"entity": self.entity, "entity_id": self.entity_id, "retryable": True}


class NotFoundError(QuoteflowError):
    code = "not_found"
    http_status = 404

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id

    def context(self) -> dict[str, Any]:
        return {"entity": self.entity, "entity_id": self.entity_id}


class AuditLogImmutableError(QuoteflowError):
    code = "audit_log_immutable"
    http_status = 409

    def __init__(self, operation: str) -> None:
        super().__init__(f"audit log entries are append-only ({operation} rejected)")
        self.operation = operation


class QuoteNotEditableError(InvalidTransitionError):
    """Areas and selections are frozen once a quote leaves draft; revise it instead."""

    code = "quote_not_editable"

    def __init__(self, status: str) -> None:
        super().__init__(status, "draft", entity="quote")
        self.message = f"quote is '{status}'; only draft quotes can be edited"
        self.args = (self.message,)
