from __future__ import annotations

import math
from typing import Dict, List, Optional, Sequence

from crawlsync.services.crawl.base import normalize_text


def cosine(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    if not a or not b:
        return 0.0
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(x * x for x in b))
    if na == 0 or nb == 0:
        return 0.0
    return sum(x * y for x, y in zip(a, b)) / (na * nb)


def identity_key(title: str, description: str) -> str:
    """Normalized title+description; equal keys are duplicates without asking the judge."""
    return normalize_text(f"{title}\n{description}").lower()


def mean_vector(vectors: Sequence[Optional[Sequence[float]]]) -> Optional[List[float]]:
    present = [v for v in vectors if v]
    if not present:
        return None
    width = len(present[0])
    return [sum(v[i] for v in present) / len(present) for i in range(width)]


class UnionFind:
    def __init__(self, size: int) -> None:
        self.parent = list(range(size))

    def find(self, i: int) -> int:
        while self.parent[i] != i:
            self.parent[i] = self.parent[self.parent[i]]
            i = self.parent[i]
        return i

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            self.parent[max(ra, rb)] = min(ra, rb)

    def groups(self) -> List[List[int]]:
        """Members per set, ordered by smallest member."""
        out: Dict[int, List[int]] = {}
        for i in range(len(self.parent)):
            out.setdefault(self.find(i), []).append(i)
        return [out[root] for root in sorted(out)]
