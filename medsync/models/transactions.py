"""
Transaction and rollback log records
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from .base import BaseModel


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RollbackStrategy(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class LoggedOperation(BaseModel):
    collection: str
    document_id: str
    operation: str
    data_keys: List[str] = Field(default_factory=list)


class RollbackInfo(BaseModel):
    strategy: RollbackStrategy = RollbackStrategy.AUTOMATIC
    attempted: bool = False
    compensated_document_ids: List[str] = Field(default_factory=list)
    manual_review_required: bool = False


class TransactionLogEntry(BaseModel):
    transaction_id: str
    transaction_type: str
    operations: List[LoggedOperation] = Field(default_factory=list)
    status: TransactionStatus = TransactionStatus.PENDING
    started_at: datetime
    completed_at: Optional[datetime] = None
    execution_time_ms: Optional[float] = None
    error: Optional[str] = None
    created_by: str = "system"
    correlation_id: Optional[str] = None
    rollback_info: RollbackInfo = Field(default_factory=RollbackInfo)


class RollbackLogEntry(BaseModel):
    """One compensation run of a distributed transaction"""

    id: str
    transaction_id: str
    failed_phase: str
    completed_phases: List[str]
    compensated_phases: List[str] = Field(default_factory=list)
    compensation_errors: List[str] = Field(default_factory=list)
    error: str
    created_at: datetime


class TransactionResult(BaseModel):
    success: bool
    transaction_id: str
    correlation_id: Optional[str] = None
    execution_time_ms: float = 0
    results: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[str] = None
    rollback_performed: bool = False
