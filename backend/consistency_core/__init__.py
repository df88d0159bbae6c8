"""
Transaction-budget consistency engine
"""
from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    validate_non_negative,
    safe_divide,
    safe_subtract,
    safe_add,
    percentage_of,
    FinancialPrecisionError,
    NegativeValueError
)

from .document_store import (
    DocumentStore,
    WriteBatch,
    MotorDocumentStore,
    InMemoryDocumentStore,
    ElementUpdate,
    StaleWriteError,
    CommitFailedError
)

from .domain_events import (
    AlertChannel,
    BudgetAlertEvent
)

from .transaction_validation import (
    ValidationError,
    validate_transaction,
    sanitize_transaction
)

from .change_auditor import ChangeAuditor, AuditImmutableError

from .integrity_verifier import (
    IntegrityVerifier,
    IntegrityReport,
    IntegrityError
)

from .version_lock_engine import (
    OptimisticLockManager,
    AdvisoryLock,
    MergeResult,
    field_merge_resolver,
    reject_resolver,
    ConflictError,
    LockHeldError,
    NotFoundError
)

from .budget_impact_engine import (
    BudgetImpactEngine,
    BudgetImpact,
    ImpactPreview,
    RecomputeStrategy,
    DeltaRecompute,
    FullRecompute,
    strategy_from_name
)

from .reconciliation_service import (
    ReconciliationService,
    ReconciliationResult,
    ReconciliationReport,
    ReconciliationDiscrepancy,
    SnapshotImmutableError,
    SnapshotNotFoundError
)

from .financial_integrity_job import BudgetIntegrityJob

from .background_job_engine import (
    BackgroundJobEngine,
    JobStatus,
    JobType
)

from .transaction_mutation_facade import (
    TransactionMutationFacade,
    MutationStage
)

__all__ = [
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'validate_non_negative',
    'safe_divide',
    'safe_subtract',
    'safe_add',
    'percentage_of',
    'FinancialPrecisionError',
    'NegativeValueError',
    # Document Store
    'DocumentStore',
    'WriteBatch',
    'MotorDocumentStore',
    'InMemoryDocumentStore',
    'ElementUpdate',
    'StaleWriteError',
    'CommitFailedError',
    # Alerts
    'AlertChannel',
    'BudgetAlertEvent',
    # Validation
    'ValidationError',
    'validate_transaction',
    'sanitize_transaction',
    # Audit & Integrity
    'ChangeAuditor',
    'AuditImmutableError',
    'IntegrityVerifier',
    'IntegrityReport',
    'IntegrityError',
    # Locking
    'OptimisticLockManager',
    'AdvisoryLock',
    'MergeResult',
    'field_merge_resolver',
    'reject_resolver',
    'ConflictError',
    'LockHeldError',
    'NotFoundError',
    # Budget Impact
    'BudgetImpactEngine',
    'BudgetImpact',
    'ImpactPreview',
    'RecomputeStrategy',
    'DeltaRecompute',
    'FullRecompute',
    'strategy_from_name',
    # Reconciliation
    'ReconciliationService',
    'ReconciliationResult',
    'ReconciliationReport',
    'ReconciliationDiscrepancy',
    'SnapshotImmutableError',
    'SnapshotNotFoundError',
    # Jobs
    'BudgetIntegrityJob',
    'BackgroundJobEngine',
    'JobStatus',
    'JobType',
    # Facade
    'TransactionMutationFacade',
    'MutationStage',
]
