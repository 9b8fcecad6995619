"""Size-adaptive similarity index selection and faiss index builders.

Classes:
    IndexPolicy: Chooses exact, IVF or HNSW search from a row count.
    BuiltIndex: A faiss index over one (dimension, metric) partition plus its row ids.

Functions:
    build_index(plan, ids, matrix, metric): Train and populate a faiss index for a plan.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Sequence
from uuid import UUID

import faiss
import numpy as np

from workshop_rag.schemas.vector import IndexMethod, IndexPlan
from workshop_rag.utils.vectors import l2_normalise


@dataclass(frozen=True)
class IndexPolicy:
    exact_max_rows: int = 1000
    hnsw_min_rows: int = 100000
    hnsw_m: int = 16
    hnsw_ef_search: int = 64

    def method_for(self, row_count: int) -> IndexMethod:
        if row_count < self.exact_max_rows:
            return "exact"
        if row_count < self.hnsw_min_rows:
            return "ivf"
        return "hnsw"

    def params_for(self, method: IndexMethod, row_count: int) -> dict[str, Any]:
        if method == "ivf":
            lists = min(max(row_count // 10, 10), 1000)
            # faiss cannot train more centroids than points
            lists = max(1, min(lists, row_count))
            return {"lists": lists, "nprobe": max(1, lists // 10)}
        if method == "hnsw":
            return {
                "m": self.hnsw_m,
                "ef_construction": max(1, min(row_count // 10, 200)),
                "ef_search": self.hnsw_ef_search,
            }
        return {}

    def plan(self, row_count: int) -> IndexPlan:
        method = self.method_for(row_count)
        return IndexPlan(method=method, row_count=row_count, params=self.params_for(method, row_count))


def _faiss_metric(metric: str) -> int:
    return faiss.METRIC_L2 if metric == "l2" else faiss.METRIC_INNER_PRODUCT


def _prepare(matrix: np.ndarray, metric: str) -> np.ndarray:
    working = np.ascontiguousarray(matrix, dtype=np.float32)
    if metric == "cosine":
        working = np.ascontiguousarray(l2_normalise(working), dtype=np.float32)
    return working


@dataclass(slots=True)
class BuiltIndex:
    plan: IndexPlan
    metric: str
    dim: int
    ids: list[UUID]
    index: Any
    generation: int
    build_time_ms: float

    def search(self, query: Sequence[float], k: int) -> list[UUID]:
        """Return ids of the approximate top-``k`` rows, best first."""

        if not self.ids or k <= 0:
            return []
        vector = _prepare(np.asarray(query, dtype=np.float32).reshape(1, -1), self.metric)
        _, positions = self.index.search(vector, min(k, len(self.ids)))
        return [self.ids[int(pos)] for pos in positions[0] if 0 <= int(pos) < len(self.ids)]


def build_index(
    plan: IndexPlan,
    ids: Sequence[UUID],
    matrix: np.ndarray,
    metric: str,
    *,
    generation: int = 0,
) -> BuiltIndex:
    if plan.method == "exact":
        raise ValueError("exact search does not use a prebuilt index")
    start = time.perf_counter()
    working = _prepare(matrix, metric)
    dim = int(working.shape[1])
    faiss_metric = _faiss_metric(metric)

    if plan.method == "ivf":
        quantizer = faiss.IndexFlatL2(dim) if faiss_metric == faiss.METRIC_L2 else faiss.IndexFlatIP(dim)
        index = faiss.IndexIVFFlat(quantizer, dim, int(plan.params["lists"]), faiss_metric)
        index.train(working)
        index.add(working)
        index.nprobe = int(plan.params["nprobe"])
    else:
        index = faiss.IndexHNSWFlat(dim, int(plan.params["m"]), faiss_metric)
        index.hnsw.efConstruction = int(plan.params["ef_construction"])
        index.add(working)
        index.hnsw.efSearch = int(plan.params["ef_search"])

    build_time_ms = round((time.perf_counter() - start) * 1000.0, 3)
    return BuiltIndex(
        plan=plan,
        metric=metric,
        dim=dim,
        ids=list(ids),
        index=index,
        generation=generation,
        build_time_ms=build_time_ms,
    )
