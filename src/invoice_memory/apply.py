"""
想起したメモリを請求書に適用する検出器群

各検出器は元の請求書だけを見て判定し、補正内容（パッチ）を返す。
パッチは互いに別のフィールドを書き換えるため、適用順には依存しない。
"""

import copy
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config_loader import section
from .logging_config import get_logger
from .models import (
    CORRECTION,
    FIELD_MAPPING,
    VENDOR,
    ApplicationResult,
    Invoice,
    PurchaseOrder,
    RecalledMemories,
    VendorMemory,
)

logger = get_logger("invoice_memory.apply")

LEISTUNGSDATUM_PATTERN = re.compile(r"Leistungsdatum:?\s*(\d{2})\.(\d{2})\.(\d{4})")
TAX_INCLUDED_PATTERN = re.compile(
    r"MwSt\.\s*inkl\.|incl\.\s*VAT|VAT already included|Prices incl\. VAT", re.IGNORECASE
)
FREIGHT_PATTERN = re.compile(r"Seefracht|Shipping", re.IGNORECASE)
# "2% Skonto within 10 days" / "3 % Skonto bei Zahlung innerhalb 14 Tagen"
SKONTO_PATTERN = re.compile(
    r"(\d+(?:[.,]\d+)?)\s*%\s*Skonto\b(?:\W+\w+){0,4}?\W+(\d+)\s*(?:days?|Tagen?)\b", re.IGNORECASE
)

NO_CORRECTIONS = "No memory-based corrections applied."


@dataclass
class Detection:
    patch: Dict[str, Any]  # InvoiceFields の属性名 -> 新しい値
    correction: Optional[str]  # None なら補正・理由として報告しない
    reasoning: Optional[str]
    confidence: Optional[float] = None  # None なら信頼度平均に加えない
    memory_refs: List[tuple] = field(default_factory=list)  # (kind, id)


@dataclass(frozen=True)
class Detector:
    name: str
    func: Callable[..., Optional[Detection]]


def _find_vendor_memory(memories: RecalledMemories, key: str) -> Optional[VendorMemory]:
    for m in memories.vendor_memories:
        if m.pattern_key == key and m.pattern_type == FIELD_MAPPING:
            return m
    return None


def detect_service_date(invoice, memories, purchase_orders, cfg) -> Optional[Detection]:
    memory = _find_vendor_memory(memories, "Leistungsdatum")
    if not memory or invoice.fields.service_date:
        return None
    match = LEISTUNGSDATUM_PATTERN.search(invoice.raw_text)
    if not match:
        return None
    day, month, year = match.groups()
    try:
        service_date = datetime(int(year), int(month), int(day)).strftime("%Y-%m-%d")
    except ValueError:
        return None
    return Detection(
        patch={"service_date": service_date},
        correction=f"Applied serviceDate from Leistungsdatum pattern (confidence: {memory.confidence:.2f})",
        reasoning=f'Vendor {invoice.vendor} uses "Leistungsdatum" for service dates.',
        confidence=memory.confidence,
        memory_refs=[(VENDOR, memory.id)],
    )


def detect_tax_included(invoice, memories, purchase_orders, cfg) -> Optional[Detection]:
    if not TAX_INCLUDED_PATTERN.search(invoice.raw_text):
        return None
    fields = invoice.fields
    divisor = 1 + (fields.tax_rate or 0)
    if fields.gross_total is None or divisor <= 0:
        return None

    # 総額を税込額とみなして税抜・税額を再計算
    recalc_net = fields.gross_total / divisor
    recalc_tax = fields.gross_total - recalc_net
    tolerance = section(cfg, "thresholds")["tax_recalc_tolerance"]
    if abs(recalc_tax - (fields.tax_total or 0)) <= tolerance:
        return None

    memory = next((m for m in memories.correction_memories if m.correction_type == "tax_included"), None)
    net_total = round(recalc_net, 2)
    tax_total = round(recalc_tax, 2)
    return Detection(
        patch={"net_total": net_total, "tax_total": tax_total},
        correction=f"Recalculated tax: VAT included in total (net: {net_total}, tax: {tax_total})",
        reasoning='Detected "VAT included" pattern - recalculated net and tax from gross total.',
        confidence=memory.confidence if memory else section(cfg, "detectors")["tax_included"],
        memory_refs=[(CORRECTION, memory.id)] if memory else [],
    )


def detect_currency(invoice, memories, purchase_orders, cfg) -> Optional[Detection]:
    if invoice.fields.currency or "EUR" not in invoice.raw_text:
        return None
    return Detection(
        patch={"currency": "EUR"},
        correction="Recovered currency EUR from rawText",
        reasoning="Extracted missing currency from invoice text.",
        confidence=section(cfg, "detectors")["currency"],
    )


def detect_freight_sku(invoice, memories, purchase_orders, cfg) -> Optional[Detection]:
    def is_unmapped_freight(item):
        return not item.sku and FREIGHT_PATTERN.search(item.description or "")

    if not any(is_unmapped_freight(item) for item in invoice.fields.line_items):
        return None

    line_items = [
        replace(item, sku="FREIGHT") if is_unmapped_freight(item) else replace(item)
        for item in invoice.fields.line_items
    ]
    memory = _find_vendor_memory(memories, "Seefracht")
    if memory:
        return Detection(
            patch={"line_items": line_items},
            correction=f'Mapped "Seefracht/Shipping" to SKU FREIGHT (confidence: {memory.confidence:.2f})',
            reasoning="Applied learned freight description mapping.",
            confidence=memory.confidence,
            memory_refs=[(VENDOR, memory.id)],
        )
    # 学習前はSKUだけ黙って補完する
    return Detection(patch={"line_items": line_items}, correction=None, reasoning=None)


def _shares_line_item(invoice: Invoice, po: PurchaseOrder) -> bool:
    for po_item in po.line_items:
        for item in invoice.fields.line_items:
            if item.sku and item.sku == po_item.sku and item.qty == po_item.qty:
                return True
    return False


def detect_po_match(invoice, memories, purchase_orders, cfg) -> Optional[Detection]:
    if invoice.fields.po_number or not purchase_orders:
        return None
    vendor = invoice.vendor.strip().casefold()
    matching = [
        po for po in purchase_orders
        if po.vendor.strip().casefold() == vendor and _shares_line_item(invoice, po)
    ]
    if len(matching) != 1:
        return None
    po = matching[0]
    return Detection(
        patch={"po_number": po.po_number},
        correction=f"Matched to PO {po.po_number} (single matching PO with same items)",
        reasoning="Auto-matched to PO based on vendor and line items.",
        confidence=section(cfg, "detectors")["po_match"],
    )


def detect_skonto(invoice, memories, purchase_orders, cfg) -> Optional[Detection]:
    if invoice.fields.discount_terms:
        return None
    match = SKONTO_PATTERN.search(invoice.raw_text)
    if not match:
        return None
    terms = f"{match.group(1)}% Skonto within {match.group(2)} days"
    return Detection(
        patch={"discount_terms": terms},
        correction=f"Extracted discount terms: {terms}",
        reasoning="Detected and stored Skonto payment terms.",
        confidence=section(cfg, "detectors")["skonto"],
    )


DETECTORS = (
    Detector("service_date", detect_service_date),
    Detector("tax_included", detect_tax_included),
    Detector("currency", detect_currency),
    Detector("freight_sku", detect_freight_sku),
    Detector("po_match", detect_po_match),
    Detector("skonto", detect_skonto),
)


def apply_memories(
    invoice: Invoice,
    memories: RecalledMemories,
    purchase_orders: Sequence[PurchaseOrder] = (),
    cfg: Optional[dict] = None,
    detectors: Sequence[Detector] = DETECTORS,
) -> ApplicationResult:
    """検出器を順に評価し、正規化済み請求書・補正一覧・信頼度を返す

    信頼度は元の抽出信頼度を初期値とした単純平均。
    呼び出し元の請求書は変更しない。
    """
    normalized = copy.deepcopy(invoice)
    corrections: List[str] = []
    reasoning_parts: List[str] = []
    used_memories: List[tuple] = []
    confidence_sum = invoice.confidence
    confidence_count = 1

    for detector in detectors:
        detection = detector.func(invoice, memories, purchase_orders, cfg)
        if detection is None:
            continue
        for name, value in detection.patch.items():
            setattr(normalized.fields, name, value)
        if detection.correction is not None:
            corrections.append(detection.correction)
        if detection.reasoning is not None:
            reasoning_parts.append(detection.reasoning)
        if detection.confidence is not None:
            confidence_sum += detection.confidence
            confidence_count += 1
        used_memories.extend(detection.memory_refs)
        logger.debug("%s: detector %s fired: %s", invoice.invoice_id, detector.name, detection.correction)

    confidence_score = confidence_sum / confidence_count
    logger.info(
        "%s: %d correction(s), confidence %.2f", invoice.invoice_id, len(corrections), confidence_score
    )
    return ApplicationResult(
        normalized_invoice=normalized,
        proposed_corrections=corrections,
        confidence_score=confidence_score,
        reasoning=" ".join(reasoning_parts).strip() or NO_CORRECTIONS,
        used_memories=used_memories,
    )
