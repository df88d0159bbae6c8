"""
Domain entities for the transaction-budget consistency engine.

Documents are persisted as plain dicts keyed by "_id"; these models define
their shape and the helpers that decide which transactions count toward a
budget category.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime
from enum import Enum
import uuid

from .document_store import ElementUpdate
from .financial_precision import to_float, safe_subtract, to_decimal, ZERO


def new_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# ENUMS
# =============================================================================

class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    ASSET = "asset"
    LIABILITY = "liability"


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    RESTORE = "RESTORE"


class AlertType(str, Enum):
    OVER_BUDGET = "over-budget"
    APPROACHING_LIMIT = "approaching-limit"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class EntityType(str, Enum):
    TRANSACTION = "transaction"
    BUDGET = "budget"


# =============================================================================
# MUTABLE FIELD SETS
# =============================================================================

# Fields a caller may change; everything else is bookkeeping owned by the engine.
TRANSACTION_MUTABLE_FIELDS: Tuple[str, ...] = (
    "type",
    "amount",
    "currency",
    "category_id",
    "date",
    "description",
    "is_deleted",
)

BUDGET_MUTABLE_FIELDS: Tuple[str, ...] = (
    "name",
    "period_start",
    "period_end",
    "is_active",
    "categories",
)

MUTABLE_FIELDS: Dict[str, Tuple[str, ...]] = {
    EntityType.TRANSACTION.value: TRANSACTION_MUTABLE_FIELDS,
    EntityType.BUDGET.value: BUDGET_MUTABLE_FIELDS,
}

SYSTEM_FIELDS: Tuple[str, ...] = (
    "_id",
    "owner_id",
    "version",
    "locked_by",
    "lock_expiry",
    "created_at",
    "updated_at",
    "created_by",
    "last_modified_by",
)


def mutable_fields_for(entity_type: str) -> Tuple[str, ...]:
    if isinstance(entity_type, EntityType):
        entity_type = entity_type.value
    if entity_type not in MUTABLE_FIELDS:
        raise ValueError(f"Unknown entity type: {entity_type}")
    return MUTABLE_FIELDS[entity_type]


# =============================================================================
# TRANSACTION
# =============================================================================

class Transaction(BaseModel):
    transaction_id: Optional[str] = Field(default=None, alias="_id")
    owner_id: str
    type: TransactionType
    amount: float
    currency: str = "USD"
    category_id: str
    date: datetime
    description: str = ""
    version: int = 1
    locked_by: Optional[str] = None
    lock_expiry: Optional[datetime] = None
    is_deleted: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    updated_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def round_amount(cls, v):
        return to_float(v)

    class Config:
        populate_by_name = True
        use_enum_values = True

    def to_document(self) -> Dict[str, Any]:
        doc = self.dict(by_alias=True)
        if doc.get("_id") is None:
            doc["_id"] = new_id()
        return doc


# =============================================================================
# BUDGET
# =============================================================================

class BudgetCategory(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    type: str = "expense"
    transaction_categories: List[str] = Field(default_factory=list)
    allocated: float = 0.0
    spent: float = 0.0

    @field_validator("allocated", "spent")
    @classmethod
    def round_money(cls, v):
        return to_float(v)

    @property
    def remaining(self) -> float:
        return to_float(safe_subtract(self.allocated, self.spent))

    @property
    def is_over_budget(self) -> bool:
        return to_decimal(self.spent) > to_decimal(self.allocated)

    def to_document(self) -> Dict[str, Any]:
        """Stored form always carries freshly derived remaining/is_over_budget."""
        doc = self.dict()
        doc["remaining"] = self.remaining
        doc["is_over_budget"] = self.is_over_budget
        return doc


class Budget(BaseModel):
    budget_id: Optional[str] = Field(default=None, alias="_id")
    owner_id: str
    name: str
    period_start: datetime
    period_end: datetime
    is_active: bool = True
    categories: List[BudgetCategory] = Field(default_factory=list)
    version: int = 1
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    updated_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None

    class Config:
        populate_by_name = True

    def to_document(self) -> Dict[str, Any]:
        doc = self.dict(by_alias=True, exclude={"categories"})
        if doc.get("_id") is None:
            doc["_id"] = new_id()
        doc["categories"] = [c.to_document() for c in self.categories]
        return doc


def category_from_document(doc: Dict[str, Any]) -> BudgetCategory:
    return BudgetCategory(
        id=doc["id"],
        name=doc["name"],
        type=doc.get("type", "expense"),
        transaction_categories=list(doc.get("transaction_categories", [])),
        allocated=doc.get("allocated", 0),
        spent=doc.get("spent", 0),
    )


def refresh_category(doc: Dict[str, Any], spent=None, allocated=None) -> Dict[str, Any]:
    """Return a category document with spent/allocated replaced and derived fields recomputed."""
    category = category_from_document(doc)
    if spent is not None:
        category.spent = to_float(max(to_decimal(spent), ZERO))
    if allocated is not None:
        category.allocated = to_float(allocated)
    return category.to_document()


DERIVED_CATEGORY_FIELDS: Tuple[str, ...] = ("spent", "remaining", "is_over_budget")


def derived_fields_update(category: Dict[str, Any]) -> ElementUpdate:
    """
    Element update writing only the derived totals of a refreshed category.

    Matches on the allocation the totals were computed against, so a
    concurrent allocation change is never overwritten; the skipped totals
    are drift for the historical recalculation job.
    """
    return ElementUpdate(
        array="categories",
        match={"id": category["id"], "allocated": category["allocated"]},
        fields={name: category[name] for name in DERIVED_CATEGORY_FIELDS},
    )


# =============================================================================
# BUDGET MEMBERSHIP
# =============================================================================

def in_budget_period(transaction: Dict[str, Any], budget: Dict[str, Any]) -> bool:
    txn_date = transaction.get("date")
    if txn_date is None:
        return False
    return budget["period_start"] <= txn_date <= budget["period_end"]


def counts_toward_budget(transaction: Optional[Dict[str, Any]], budget: Dict[str, Any]) -> bool:
    """Non-deleted expense of the budget owner dated inside the budget period."""
    if not transaction:
        return False
    if transaction.get("is_deleted", False):
        return False
    if transaction.get("type") != TransactionType.EXPENSE.value:
        return False
    if transaction.get("owner_id") != budget.get("owner_id"):
        return False
    return in_budget_period(transaction, budget)


def category_matches(category: Dict[str, Any], category_id: Optional[str]) -> bool:
    return category_id is not None and category_id in category.get("transaction_categories", [])


def matching_categories(budget: Dict[str, Any], category_id: Optional[str]) -> List[Dict[str, Any]]:
    """Every budget category whose mapping set contains the transaction category."""
    return [c for c in budget.get("categories", []) if category_matches(c, category_id)]


# =============================================================================
# SIDE-EFFECT RECORDS
# =============================================================================

class BudgetAlert(BaseModel):
    alert_id: str = Field(default_factory=new_id, alias="_id")
    owner_id: str
    budget_id: str
    category_id: str
    transaction_id: Optional[str] = None
    type: AlertType
    message: str
    severity: AlertSeverity
    threshold: float
    current_amount: float
    is_read: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        populate_by_name = True
        use_enum_values = True


class ChangeRecord(BaseModel):
    field: str
    old_value: Any = None
    new_value: Any = None


class AuditEntry(BaseModel):
    audit_id: str = Field(default_factory=new_id, alias="_id")
    timestamp: datetime = Field(default_factory=lambda: datetime.utcnow())
    actor_id: str
    owner_id: Optional[str] = None
    action: AuditAction
    entity_type: str = EntityType.TRANSACTION.value
    entity_id: str
    changes: List[ChangeRecord] = Field(default_factory=list)
    previous_state: Optional[Dict[str, Any]] = None
    new_state: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True
        use_enum_values = True


class BalanceSnapshot(BaseModel):
    snapshot_id: Optional[str] = Field(default=None, alias="_id")
    owner_id: Optional[str] = None
    date: datetime
    income: float = 0.0
    expenses: float = 0.0
    assets: float = 0.0
    liabilities: float = 0.0
    net_worth: float = 0.0
    cash_flow: float = 0.0
    transaction_count: int = 0
    checksum: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        populate_by_name = True
