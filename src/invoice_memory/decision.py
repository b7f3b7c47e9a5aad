from typing import List, Optional

from .config_loader import section
from .logging_config import get_logger
from .models import AUTO_ACCEPT, AUTO_CORRECT, ESCALATE, DecisionResult, Invoice
from .state_store import MemoryStore

logger = get_logger("invoice_memory.decision")


def integrity_issues(invoice: Invoice, cfg: Optional[dict] = None) -> List[str]:
    """必須項目・金額・税額の整合性チェック"""
    fields = invoice.fields
    issues: List[str] = []

    if not fields.invoice_number:
        issues.append("missing invoiceNumber")
    if not fields.gross_total:
        issues.append("missing grossTotal")
    if not fields.currency:
        issues.append("missing currency")
    if fields.gross_total is not None and fields.gross_total < 0:
        issues.append("negative grossTotal")

    # 税額の乖離チェック（期待税額が0だと割合が出せないので要確認扱い）
    expected_tax = (fields.net_total or 0) * (fields.tax_rate or 0)
    if expected_tax == 0:
        issues.append("cannot verify tax: netTotal or taxRate is zero")
    else:
        discrepancy_pct = abs(expected_tax - (fields.tax_total or 0)) / abs(expected_tax) * 100
        if discrepancy_pct > section(cfg, "thresholds")["tax_discrepancy_pct"]:
            issues.append(f"tax calculation discrepancy {discrepancy_pct:.1f}%")

    return issues


def make_decision(
    store: MemoryStore,
    invoice: Invoice,
    corrections: List[str],
    confidence_score: float,
    cfg: Optional[dict] = None,
) -> DecisionResult:
    """抽出信頼度・補正内容を踏まえたアクション決定

    重複 → 整合性 → 自動承認 → 自動補正 → エスカレーションの順に判定
    """
    th = section(cfg, "thresholds")

    if store.exists_by_origin_and_doc_number(invoice.vendor, invoice.fields.invoice_number):
        logger.warning("duplicate invoice %s from %s", invoice.fields.invoice_number, invoice.vendor)
        return DecisionResult(
            requires_human_review=True,
            reasoning=f"DUPLICATE DETECTED: Invoice {invoice.fields.invoice_number} from {invoice.vendor} already processed.",
            action=ESCALATE,
            duplicate=True,
        )

    issues = integrity_issues(invoice, cfg)
    if issues:
        return DecisionResult(
            requires_human_review=True,
            reasoning=f"Issues detected: {', '.join(issues)}. Requires human review.",
            action=ESCALATE,
        )

    if confidence_score >= th["auto_accept"] and not corrections:
        return DecisionResult(
            requires_human_review=False,
            reasoning=f"High confidence ({confidence_score:.2f}), no corrections needed. Auto-accepted.",
            action=AUTO_ACCEPT,
        )

    if confidence_score >= th["auto_correct"] and corrections:
        return DecisionResult(
            requires_human_review=True,
            reasoning=f"Applied {len(corrections)} correction(s) with confidence {confidence_score:.2f}. Review recommended for audit.",
            action=AUTO_CORRECT,
        )

    return DecisionResult(
        requires_human_review=True,
        reasoning=f"Low confidence ({confidence_score:.2f}). Escalating for human review.",
        action=ESCALATE,
    )
