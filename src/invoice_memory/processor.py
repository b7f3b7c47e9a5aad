from datetime import datetime, timezone
from typing import List, Optional, Sequence

from .apply import apply_memories
from .config_loader import load_pipeline_config
from .decision import make_decision
from .learn import learn_from_correction
from .logging_config import get_logger
from .models import (
    CORRECTION,
    RESOLUTION,
    STAGE_APPLY,
    STAGE_DECIDE,
    STAGE_LEARN,
    STAGE_RECALL,
    VENDOR,
    AuditTrailEntry,
    HumanCorrection,
    Invoice,
    ProcessingResult,
    PurchaseOrder,
    RecalledMemories,
)
from .recall import recall_memories
from .state_store import AuditSink, MemoryStore

logger = get_logger("invoice_memory.processor")


class InvoiceProcessor:
    """Recall → Apply → Decide を順に実行し、人手の修正は Learn に回す"""

    def __init__(self, store: MemoryStore, audit: Optional[AuditSink] = None, cfg: Optional[dict] = None):
        self.store = store
        self.audit = audit
        self.cfg = cfg if cfg is not None else load_pipeline_config()

    def _record(self, trail: List[AuditTrailEntry], target_id: str, step: str, details: str, log_details: str = None):
        trail.append(AuditTrailEntry(step=step, timestamp=datetime.now(timezone.utc).isoformat(), details=details))
        if self.audit is None:
            return
        # 監査ログの失敗で処理は止めない
        try:
            self.audit.append(target_id, step, log_details if log_details is not None else details)
        except Exception as e:
            logger.warning("audit log write failed for %s/%s: %s", target_id, step, e)

    def _touch_used_memories(self, memories: RecalledMemories, used: Sequence[tuple]):
        confidences = {}
        for kind, items in (
            (VENDOR, memories.vendor_memories),
            (CORRECTION, memories.correction_memories),
            (RESOLUTION, memories.resolution_memories),
        ):
            for m in items:
                confidences[(kind, m.id)] = m.confidence
        for ref in dict.fromkeys(used):
            if ref in confidences:
                self.store.reinforce(ref[0], ref[1], confidences[ref], bump_usage=True)

    def process_invoice(self, invoice: Invoice, purchase_orders: Sequence[PurchaseOrder] = ()) -> ProcessingResult:
        trail: List[AuditTrailEntry] = []

        # 1. Recall
        memories = recall_memories(self.store, invoice, self.cfg)
        self._record(
            trail,
            invoice.invoice_id,
            STAGE_RECALL,
            f"Recalled {len(memories.vendor_memories)} vendor memories, "
            f"{len(memories.correction_memories)} correction patterns, "
            f"{len(memories.resolution_memories)} resolutions",
            f"Retrieved {memories.total()} total memories",
        )

        # 2. Apply
        applied = apply_memories(invoice, memories, purchase_orders, self.cfg)
        self._record(
            trail,
            invoice.invoice_id,
            STAGE_APPLY,
            f"Applied memories: {len(applied.proposed_corrections)} corrections proposed. {applied.reasoning}",
            f"Applied {len(applied.proposed_corrections)} corrections",
        )

        # 3. Decide
        decision = make_decision(
            self.store,
            applied.normalized_invoice,
            applied.proposed_corrections,
            applied.confidence_score,
            self.cfg,
        )
        self._record(
            trail,
            invoice.invoice_id,
            STAGE_DECIDE,
            f"Decision: {decision.action}. {decision.reasoning}",
            f"Action: {decision.action}, Review: {decision.requires_human_review}",
        )

        # 重複でなければ使用メモリを更新してから処理済みとして登録
        if not decision.duplicate:
            self._touch_used_memories(memories, applied.used_memories)
            self.store.mark_processed(
                invoice.invoice_id,
                invoice.vendor,
                invoice.fields.invoice_number,
                invoice.fields.invoice_date,
            )

        logger.info(
            "%s: %s (confidence %.2f, review=%s)",
            invoice.invoice_id,
            decision.action,
            applied.confidence_score,
            decision.requires_human_review,
        )
        return ProcessingResult(
            normalized_invoice=applied.normalized_invoice,
            proposed_corrections=applied.proposed_corrections,
            requires_human_review=decision.requires_human_review,
            reasoning=f"{decision.reasoning} {applied.reasoning}",
            confidence_score=applied.confidence_score,
            action=decision.action,
            audit_trail=trail,
        )

    def apply_human_correction(self, correction: HumanCorrection) -> List[str]:
        trail: List[AuditTrailEntry] = []
        memory_updates = learn_from_correction(self.store, correction, self.cfg)
        self._record(
            trail,
            correction.invoice_id,
            STAGE_LEARN,
            f"Learned from human correction: {'; '.join(memory_updates)}",
            "; ".join(memory_updates),
        )
        return memory_updates
