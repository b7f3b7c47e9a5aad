from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# memory kinds
VENDOR = "vendor"
CORRECTION = "correction"
RESOLUTION = "resolution"
MEMORY_KINDS = (VENDOR, CORRECTION, RESOLUTION)

# vendor memory pattern types
FIELD_MAPPING = "field_mapping"
CALCULATION = "calculation"
BEHAVIOR = "behavior"

# decision actions
AUTO_ACCEPT = "auto-accept"
AUTO_CORRECT = "auto-correct"
ESCALATE = "escalate"

# audit stages
STAGE_RECALL = "recall"
STAGE_APPLY = "apply"
STAGE_DECIDE = "decide"
STAGE_LEARN = "learn"

APPROVED = "approved"
REJECTED = "rejected"


def _pick(data: Dict, *keys, default=None):
    """camelCase / snake_case の両方を受け付ける"""
    for key in keys:
        if key in data:
            return data[key]
    return default


def _require(data: Dict, *keys):
    for key in keys:
        if key in data:
            return data[key]
    raise ValueError(f"missing required key: {keys[0]}")


@dataclass
class LineItem:
    qty: float
    unit_price: float
    sku: Optional[str] = None
    description: Optional[str] = None
    qty_delivered: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "LineItem":
        return cls(
            qty=_pick(data, "qty", "quantity", default=0),
            unit_price=_pick(data, "unitPrice", "unit_price", default=0.0),
            sku=_pick(data, "sku"),
            description=_pick(data, "description"),
            qty_delivered=_pick(data, "qtyDelivered", "qty_delivered"),
        )

    def to_dict(self) -> Dict:
        return {
            "sku": self.sku,
            "description": self.description,
            "qty": self.qty,
            "unitPrice": self.unit_price,
            "qtyDelivered": self.qty_delivered,
        }


@dataclass
class InvoiceFields:
    invoice_number: str
    invoice_date: str
    net_total: float
    tax_rate: float
    tax_total: float
    gross_total: Optional[float]
    line_items: List[LineItem] = field(default_factory=list)
    service_date: Optional[str] = None
    currency: Optional[str] = None
    po_number: Optional[str] = None
    discount_terms: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "InvoiceFields":
        return cls(
            invoice_number=_require(data, "invoiceNumber", "invoice_number"),
            invoice_date=_pick(data, "invoiceDate", "invoice_date", default=""),
            net_total=_pick(data, "netTotal", "net_total", default=0.0) or 0.0,
            tax_rate=_pick(data, "taxRate", "tax_rate", default=0.0) or 0.0,
            tax_total=_pick(data, "taxTotal", "tax_total", default=0.0) or 0.0,
            gross_total=_pick(data, "grossTotal", "gross_total"),
            line_items=[LineItem.from_dict(i) for i in _pick(data, "lineItems", "line_items", default=[]) or []],
            service_date=_pick(data, "serviceDate", "service_date"),
            currency=_pick(data, "currency"),
            po_number=_pick(data, "poNumber", "po_number"),
            discount_terms=_pick(data, "discountTerms", "discount_terms"),
        )

    def to_dict(self) -> Dict:
        return {
            "invoiceNumber": self.invoice_number,
            "invoiceDate": self.invoice_date,
            "serviceDate": self.service_date,
            "currency": self.currency,
            "poNumber": self.po_number,
            "netTotal": self.net_total,
            "taxRate": self.tax_rate,
            "taxTotal": self.tax_total,
            "grossTotal": self.gross_total,
            "lineItems": [i.to_dict() for i in self.line_items],
            "discountTerms": self.discount_terms,
        }


@dataclass
class Invoice:
    invoice_id: str
    vendor: str
    fields: InvoiceFields
    confidence: float
    raw_text: str = ""

    @classmethod
    def from_dict(cls, data: Dict) -> "Invoice":
        return cls(
            invoice_id=_require(data, "invoiceId", "invoice_id"),
            vendor=_require(data, "vendor"),
            fields=InvoiceFields.from_dict(_require(data, "fields")),
            confidence=float(_pick(data, "confidence", default=0.0) or 0.0),
            raw_text=_pick(data, "rawText", "raw_text", default="") or "",
        )

    def to_dict(self) -> Dict:
        return {
            "invoiceId": self.invoice_id,
            "vendor": self.vendor,
            "fields": self.fields.to_dict(),
            "confidence": self.confidence,
            "rawText": self.raw_text,
        }


@dataclass
class PurchaseOrder:
    po_number: str
    vendor: str
    date: str = ""
    line_items: List[LineItem] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict) -> "PurchaseOrder":
        return cls(
            po_number=_require(data, "poNumber", "po_number"),
            vendor=_require(data, "vendor"),
            date=_pick(data, "date", default=""),
            line_items=[LineItem.from_dict(i) for i in _pick(data, "lineItems", "line_items", default=[]) or []],
        )


@dataclass
class VendorMemory:
    vendor_name: str
    pattern_type: str
    pattern_key: str
    pattern_value: str
    confidence: float
    usage_count: int = 0
    last_used: Optional[str] = None
    created_at: Optional[str] = None
    id: Optional[int] = None


@dataclass
class CorrectionMemory:
    correction_type: str
    condition: str
    action: str
    confidence: float
    usage_count: int = 0
    last_used: Optional[str] = None
    created_at: Optional[str] = None
    id: Optional[int] = None


@dataclass
class ResolutionMemory:
    issue_type: str
    resolution: str
    human_approved: bool
    confidence: float
    usage_count: int = 0
    last_used: Optional[str] = None
    created_at: Optional[str] = None
    id: Optional[int] = None


@dataclass
class RecalledMemories:
    vendor_memories: List[VendorMemory] = field(default_factory=list)
    correction_memories: List[CorrectionMemory] = field(default_factory=list)
    resolution_memories: List[ResolutionMemory] = field(default_factory=list)

    def total(self) -> int:
        return len(self.vendor_memories) + len(self.correction_memories) + len(self.resolution_memories)


@dataclass(frozen=True)
class FieldCorrection:
    field: str
    from_value: Any
    to_value: Any
    reason: str = ""

    @classmethod
    def from_dict(cls, data: Dict) -> "FieldCorrection":
        return cls(
            field=_require(data, "field"),
            from_value=_pick(data, "from", "from_value"),
            to_value=_pick(data, "to", "to_value"),
            reason=_pick(data, "reason", default="") or "",
        )


@dataclass(frozen=True)
class HumanCorrection:
    invoice_id: str
    vendor: str
    corrections: tuple
    final_decision: str

    def __post_init__(self):
        if self.final_decision not in (APPROVED, REJECTED):
            raise ValueError(f"final_decision must be '{APPROVED}' or '{REJECTED}': {self.final_decision!r}")
        # 受け取った後に変更されないよう tuple に固定
        object.__setattr__(self, "corrections", tuple(self.corrections))

    @classmethod
    def from_dict(cls, data: Dict) -> "HumanCorrection":
        return cls(
            invoice_id=_require(data, "invoiceId", "invoice_id"),
            vendor=_require(data, "vendor"),
            corrections=tuple(FieldCorrection.from_dict(c) for c in _pick(data, "corrections", default=[]) or []),
            final_decision=_require(data, "finalDecision", "final_decision"),
        )


@dataclass
class AuditTrailEntry:
    step: str
    timestamp: str
    details: str


@dataclass
class ApplicationResult:
    normalized_invoice: Invoice
    proposed_corrections: List[str]
    confidence_score: float
    reasoning: str
    used_memories: List[tuple] = field(default_factory=list)  # (kind, id)


@dataclass
class DecisionResult:
    requires_human_review: bool
    reasoning: str
    action: str  # auto-accept|auto-correct|escalate
    duplicate: bool = False


@dataclass
class ProcessingResult:
    normalized_invoice: Invoice
    proposed_corrections: List[str]
    requires_human_review: bool
    reasoning: str
    confidence_score: float
    action: str
    audit_trail: List[AuditTrailEntry] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "normalizedInvoice": self.normalized_invoice.to_dict(),
            "proposedCorrections": list(self.proposed_corrections),
            "requiresHumanReview": self.requires_human_review,
            "reasoning": self.reasoning,
            "confidenceScore": self.confidence_score,
            "action": self.action,
            "auditTrail": [
                {"step": e.step, "timestamp": e.timestamp, "details": e.details} for e in self.audit_trail
            ],
        }
