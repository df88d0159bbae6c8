"""
Transaction input validation and sanitisation.

Runs before any store access. Errors reject the mutation; warnings are
advisory (future dates, unusually large amounts) and never block.
"""

from dataclasses import dataclass, field
from datetime import datetime, date, timedelta, timezone
from typing import Optional, Dict, Any, List

from .entities import TransactionType
from .financial_precision import to_decimal, to_float, is_finite_amount, FinancialPrecisionError

MAX_REASONABLE_AMOUNT = 1_000_000_000
MAX_DESCRIPTION_LENGTH = 500
OLDEST_REASONABLE_DATE = timedelta(days=365 * 100)


class ValidationError(Exception):
    """Raised when transaction input is invalid"""
    def __init__(self, message: str, field: Optional[str] = None, code: str = "INVALID",
                 errors: Optional[List[Dict[str, str]]] = None):
        self.message = message
        self.field = field
        self.code = code
        self.errors = errors or [{"field": field, "code": code, "message": message}]
        super().__init__(message)


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def normalize_datetime(value) -> datetime:
    """
    Parse datetime/date/ISO string into a naive UTC datetime.
    Raises ValueError for anything unparseable.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid date value: {value!r}")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _error(errors: List[Dict[str, str]], field_name: str, code: str, message: str):
    errors.append({"field": field_name, "code": code, "message": message})


def validate_transaction(data: Dict[str, Any], is_update: bool = False,
                         now: Optional[datetime] = None) -> ValidationResult:
    """
    Validate a transaction payload.

    For creates every required field must be present. For updates only the
    supplied fields are checked.
    """
    errors: List[Dict[str, str]] = []
    warnings: List[str] = []
    now = now or datetime.utcnow()

    def present(name):
        return name in data and data[name] is not None

    # Type
    if present("type"):
        valid_types = [t.value for t in TransactionType]
        if str(data["type"]).lower() not in valid_types:
            _error(errors, "type", "INVALID_TYPE",
                   f"Transaction type must be one of: {', '.join(valid_types)}")
    elif not is_update:
        _error(errors, "type", "REQUIRED", "Transaction type is required")

    # Amount
    if present("amount"):
        if not is_finite_amount(data["amount"]):
            _error(errors, "amount", "INVALID_AMOUNT", "Amount must be a finite number")
        else:
            amount = to_decimal(data["amount"])
            if amount < 0:
                _error(errors, "amount", "NEGATIVE_AMOUNT", "Amount cannot be negative")
            elif amount > MAX_REASONABLE_AMOUNT:
                warnings.append("Amount is unusually large. Please verify.")
    elif not is_update:
        _error(errors, "amount", "REQUIRED", "Amount is required")

    # Category
    if "category_id" in data or not is_update:
        category_id = data.get("category_id")
        if not category_id or not str(category_id).strip():
            _error(errors, "category_id", "REQUIRED", "Category is required")

    # Date
    if present("date"):
        try:
            txn_date = normalize_datetime(data["date"])
        except (ValueError, TypeError):
            _error(errors, "date", "INVALID_DATE", "Invalid date")
        else:
            if txn_date > now:
                warnings.append("Transaction date is in the future")
            elif txn_date < now - OLDEST_REASONABLE_DATE:
                warnings.append("Transaction date is more than 100 years in the past")
    elif not is_update:
        _error(errors, "date", "REQUIRED", "Date is required")

    # Description
    description = data.get("description")
    if description is not None and len(str(description).strip()) > MAX_DESCRIPTION_LENGTH:
        _error(errors, "description", "TOO_LONG",
               f"Description cannot exceed {MAX_DESCRIPTION_LENGTH} characters")

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def assert_valid_transaction(data: Dict[str, Any], is_update: bool = False,
                             now: Optional[datetime] = None) -> List[str]:
    """Raise ValidationError on the first failure; return warnings otherwise."""
    result = validate_transaction(data, is_update=is_update, now=now)
    if not result.is_valid:
        first = result.errors[0]
        raise ValidationError(first["message"], field=first["field"], code=first["code"],
                              errors=result.errors)
    return result.warnings


def require_actor(actor_id: Optional[str]):
    if not actor_id or not str(actor_id).strip():
        raise ValidationError("Authenticated user is required", field="actor_id",
                              code="UNAUTHENTICATED")


def sanitize_transaction(data: Dict[str, Any]) -> Dict[str, Any]:
    """Trim strings, normalise type/date and round amount. Assumes validated input."""
    sanitized = dict(data)
    if sanitized.get("description") is not None:
        sanitized["description"] = str(sanitized["description"]).strip()
    if sanitized.get("category_id") is not None:
        sanitized["category_id"] = str(sanitized["category_id"]).strip()
    if sanitized.get("type") is not None:
        sanitized["type"] = str(sanitized["type"]).lower()
    if sanitized.get("currency") is not None:
        sanitized["currency"] = str(sanitized["currency"]).strip().upper()
    if sanitized.get("amount") is not None:
        try:
            sanitized["amount"] = to_float(sanitized["amount"])
        except FinancialPrecisionError:
            raise ValidationError("Amount must be a finite number", field="amount",
                                  code="INVALID_AMOUNT")
    if sanitized.get("date") is not None:
        sanitized["date"] = normalize_datetime(sanitized["date"])
    return sanitized
