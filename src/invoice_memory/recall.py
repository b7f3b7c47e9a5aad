from typing import Optional

from .config_loader import section
from .logging_config import get_logger
from .models import CORRECTION, RESOLUTION, VENDOR, Invoice, RecalledMemories
from .state_store import MemoryStore

logger = get_logger("invoice_memory.recall")


def recall_memories(store: MemoryStore, invoice: Invoice, cfg: Optional[dict] = None) -> RecalledMemories:
    """取引先固有メモリとグローバルな補正・解決メモリを想起する（読み取りのみ）"""
    limit = section(cfg, "recall")["limit"]

    memories = RecalledMemories(
        vendor_memories=store.list_by_origin(VENDOR, invoice.vendor)[:limit],
        correction_memories=store.list_global(CORRECTION)[:limit],
        resolution_memories=store.list_global(RESOLUTION)[:limit],
    )
    logger.info(
        "recalled %d vendor / %d correction / %d resolution memories for %s",
        len(memories.vendor_memories),
        len(memories.correction_memories),
        len(memories.resolution_memories),
        invoice.vendor,
    )
    return memories
