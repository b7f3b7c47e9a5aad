"""請求書の学習型補正パイプライン（Recall → Apply → Decide → Learn）"""

from .models import (
    AUTO_ACCEPT,
    AUTO_CORRECT,
    ESCALATE,
    FieldCorrection,
    HumanCorrection,
    Invoice,
    InvoiceFields,
    LineItem,
    ProcessingResult,
    PurchaseOrder,
)
from .processor import InvoiceProcessor
from .state_store import AuditSink, MemoryStore, SqliteAuditLog, SqliteMemoryStore

__version__ = "0.1.0"

__all__ = [
    "AUTO_ACCEPT",
    "AUTO_CORRECT",
    "ESCALATE",
    "AuditSink",
    "FieldCorrection",
    "HumanCorrection",
    "Invoice",
    "InvoiceFields",
    "InvoiceProcessor",
    "LineItem",
    "MemoryStore",
    "ProcessingResult",
    "PurchaseOrder",
    "SqliteAuditLog",
    "SqliteMemoryStore",
]
