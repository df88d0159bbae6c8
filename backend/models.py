from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

# ============================================
# TRANSACTION MODELS
# ============================================
class TransactionCreate(BaseModel):
    type: str
    amount: float
    category_id: str
    date: datetime
    currency: str = "USD"
    description: str = ""
    source: Optional[str] = None

class TransactionUpdate(BaseModel):
    expected_version: int
    type: Optional[str] = None
    amount: Optional[float] = None
    category_id: Optional[str] = None
    date: Optional[datetime] = None
    currency: Optional[str] = None
    description: Optional[str] = None
    source: Optional[str] = None
    reason: Optional[str] = None
    last_writer_wins: bool = False

class TransactionVersionRequest(BaseModel):
    expected_version: int
    source: Optional[str] = None
    reason: Optional[str] = None

class LockRequest(BaseModel):
    duration_seconds: Optional[int] = Field(default=None, gt=0, le=3600)

# ============================================
# BUDGET MODELS
# ============================================
class BudgetCategoryCreate(BaseModel):
    name: str
    allocated: float = 0
    transaction_categories: List[str] = []
    type: str = "expense"
    id: Optional[str] = None

class BudgetCreate(BaseModel):
    name: str
    period_start: datetime
    period_end: datetime
    categories: List[BudgetCategoryCreate] = []
    is_active: bool = True

class AllocationUpdate(BaseModel):
    allocated: float
    expected_version: int
    reason: Optional[str] = None

class ImpactPreviewRequest(BaseModel):
    amount: Optional[float] = None
    category_id: Optional[str] = None
    type: str = "expense"
    date: Optional[datetime] = None
    description: Optional[str] = None

# ============================================
# RECONCILIATION MODELS
# ============================================
class ReconcileRequest(BaseModel):
    expected_balance: Optional[float] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    account_type: str = "net_worth"

class ReconciliationReportRequest(BaseModel):
    period_start: datetime
    period_end: datetime
    expected_closing_balance: Optional[float] = None

class StatementLine(BaseModel):
    date: datetime
    amount: float
    description: Optional[str] = None

class MissingTransactionsRequest(BaseModel):
    statement: List[StatementLine]

class IntegrityVerifyRequest(BaseModel):
    expected_checksum: Optional[str] = None

# ============================================
# AUDIT MODELS
# ============================================
class AuditLog(BaseModel):
    audit_id: str
    timestamp: datetime
    actor_id: str
    owner_id: Optional[str] = None
    action: str
    entity_type: str
    entity_id: str
    changes: List[Dict[str, Any]] = []
    previous_state: Optional[Dict[str, Any]] = None
    new_state: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = {}
