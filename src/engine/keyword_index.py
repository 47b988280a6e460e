"""In-memory BM25 keyword index over document chunks."""

from __future__ import annotations

import logging
import math
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[0-9A-Za-zÀ-ÖØ-öø-ÿ]+")

K1 = 1.2
B = 0.75


def tokenize(text: str) -> list[str]:
    if not text:
        return []
    return _TOKEN_RE.findall(text.lower())


@dataclass
class _Entry:
    source_id: str
    content: str
    chunk_index: int | None
    metadata: Dict[str, Any]
    tf: Dict[str, int] = field(default_factory=dict)
    length: int = 0


class BM25KeywordIndex:
    """Lexical top-K search with Okapi BM25 (k1=1.2, b=0.75).

    Scores are unnormalized BM25 values; the fuser normalizes by list max.
    """

    def __init__(self, k1: float = K1, b: float = B):
        self.k1 = k1
        self.b = b
        self._entries: List[_Entry] = []
        self._df: Dict[str, int] = {}
        self._total_len = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def add(
        self,
        source_id: str,
        content: str,
        *,
        chunk_index: int | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        tokens = tokenize(content)
        tf: Dict[str, int] = {}
        for tok in tokens:
            tf[tok] = tf.get(tok, 0) + 1
        entry = _Entry(
            source_id=str(source_id),
            content=content or "",
            chunk_index=chunk_index,
            metadata=dict(metadata or {}),
            tf=tf,
            length=len(tokens),
        )
        with self._lock:
            self._entries.append(entry)
            self._total_len += entry.length
            for term in tf:
                self._df[term] = self._df.get(term, 0) + 1

    def add_documents(self, documents: Iterable[Mapping[str, Any]]) -> int:
        """Add ``{source_id, content, chunk_index?, metadata?}`` records. Returns count added."""
        count = 0
        for doc in documents:
            self.add(
                doc["source_id"],
                doc.get("content", ""),
                chunk_index=doc.get("chunk_index"),
                metadata=doc.get("metadata"),
            )
            count += 1
        return count

    def _idf(self, df: int, n: int) -> float:
        return math.log((n - df + 0.5) / (df + 0.5) + 1.0)

    def search(self, query: str, top_k: int = 5) -> List[Dict[str, Any]]:
        q_terms = list(dict.fromkeys(tokenize(query)))
        with self._lock:
            entries = list(self._entries)
            df = dict(self._df)
            total_len = self._total_len

        n = len(entries)
        if not q_terms or n == 0 or top_k <= 0:
            return []

        avgdl = (total_len / n) or 1.0
        scored: List[tuple[float, int]] = []
        for idx, entry in enumerate(entries):
            norm = self.k1 * (1.0 - self.b + self.b * (entry.length / avgdl))
            s = 0.0
            for term in q_terms:
                f = entry.tf.get(term, 0)
                if not f:
                    continue
                s += self._idf(df.get(term, 0), n) * (f * (self.k1 + 1.0)) / (f + norm)
            if s > 0:
                scored.append((s, idx))

        scored.sort(key=lambda item: item[0], reverse=True)
        return [
            {
                "source_id": entries[idx].source_id,
                "chunk_index": entries[idx].chunk_index,
                "content": entries[idx].content,
                "score": score,
                "metadata": dict(entries[idx].metadata),
            }
            for score, idx in scored[:top_k]
        ]
