"""
Unified recall over the item store.

Lexical FTS results are always computed. When an embedder is available and
the query is non-empty, vector candidates are merged ahead of them and the
result is labelled ``semantic_hybrid``; any embedding failure degrades to
the lexical result labelled ``fts``.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from db.sqlite_client import SQLiteItemStore
from memory_models import MemoryItem, SearchParams, normalize_search_params
from providers import Embedder

logger = logging.getLogger(__name__)

MODE_FTS = "fts"
MODE_SEMANTIC_HYBRID = "semantic_hybrid"


def merge_items(
    primary: Sequence[MemoryItem], secondary: Sequence[MemoryItem], limit: int
) -> List[MemoryItem]:
    """Concatenate preserving order, dropping repeated ids, up to ``limit``."""
    if limit <= 0:
        limit = 8
    merged: List[MemoryItem] = []
    seen = set()
    for item in list(primary) + list(secondary):
        if len(merged) >= limit:
            break
        item_id = (item.id or "").strip()
        if item_id:
            if item_id in seen:
                continue
            seen.add(item_id)
        merged.append(item)
    return merged


async def _semantic_candidates(
    store: SQLiteItemStore, embedder: Embedder, params: SearchParams
) -> List[MemoryItem]:
    try:
        vector = await embedder.embed(params.query)
        if not vector:
            return []
        return await store.search_by_embedding(
            vector, params.limit, params.min_importance, params.status
        )
    except Exception as exc:
        logger.warning("semantic recall degraded to fts: %s", exc)
        return []


async def recall(
    store: SQLiteItemStore,
    params: SearchParams,
    embedder: Optional[Embedder] = None,
) -> Tuple[List[MemoryItem], str, SearchParams]:
    """Return (items, mode, normalized params)."""
    params = normalize_search_params(params)
    items = await store.search(params)
    if embedder is None or not params.query:
        return items, MODE_FTS, params

    semantic = await _semantic_candidates(store, embedder, params)
    if not semantic:
        return items, MODE_FTS, params
    return merge_items(semantic, items, params.limit), MODE_SEMANTIC_HYBRID, params


async def sync_item_embedding(
    store: SQLiteItemStore, embedder: Optional[Embedder], item: MemoryItem
) -> bool:
    """Best effort: embed title+content and store it. Failures are logged, never raised."""
    if embedder is None:
        return False
    content = f"{item.title}\n{item.content}".strip()
    if not content or not item.id:
        return False
    try:
        vector = await embedder.embed(content)
        return await store.upsert_embedding(item.id, embedder.model_id(), vector)
    except Exception as exc:
        logger.warning("embedding sync failed for %s: %s", item.id, exc)
        return False
