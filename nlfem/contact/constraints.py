"""接触候補集合の構築.

境界形状（節点座標・辺・三角形）から、距離 d̂ 未満にある
プリミティブ対を探索し、最近接特徴ごとに一意化した候補集合を返す。

  2D（または三角形なしの曲線メッシュ）: 節点–辺
  3D: 節点–三角形 + 辺–辺

候補は評価ごとに作り直す一時的なもので、呼び出しをまたいだ同一性は持たない。
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import NamedTuple

import numpy as np

from nlfem.contact.broadphase import broadphase_aabb, compute_aabbs
from nlfem.contact.distance import CandidateKind, closest_feature
from nlfem.mesh import boundary_vertices

logger = logging.getLogger(__name__)


class ContactCandidate(NamedTuple):
    """接触候補（最近接特徴のステンシル）.

    Attributes:
        kind: ステンシル種類
        vertices: 全体節点インデックス（ステンシル順）
    """

    kind: CandidateKind
    vertices: tuple[int, ...]


@dataclass
class CandidateSet:
    """接触候補の集合（最近接特徴で一意化済み）."""

    candidates: list[ContactCandidate] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.candidates)

    def __iter__(self) -> Iterator[ContactCandidate]:
        return iter(self.candidates)

    @property
    def empty(self) -> bool:
        return not self.candidates

    def counts(self) -> dict[CandidateKind, int]:
        """ステンシル種類ごとの候補数."""
        return dict(Counter(c.kind for c in self.candidates))


def canonical_vertices(kind: CandidateKind, vertices: tuple[int, ...]) -> tuple[int, ...]:
    """ステンシルの意味を保ったまま節点順を正規化する（一意化のキー）."""
    if kind is CandidateKind.VERTEX_VERTEX:
        return tuple(sorted(vertices))
    if kind in (CandidateKind.VERTEX_EDGE, CandidateKind.VERTEX_FACE):
        return (vertices[0], *sorted(vertices[1:]))
    ea = tuple(sorted(vertices[:2]))
    eb = tuple(sorted(vertices[2:]))
    return (*min(ea, eb), *max(ea, eb))


def _collect(
    positions: np.ndarray,
    pairs: list[tuple[int, int]],
    prim_a: np.ndarray,
    prim_b: np.ndarray,
    kind: CandidateKind,
    dhat_squared: float,
    found: dict[tuple[CandidateKind, tuple[int, ...]], ContactCandidate],
) -> None:
    for i, j in pairs:
        stencil = (*prim_a[i], *prim_b[j])
        if len(set(stencil)) != len(stencil):
            # 節点を共有する隣接プリミティブ
            continue
        feature = closest_feature(positions[list(stencil)], kind)
        if feature.distance_squared >= dhat_squared:
            continue
        global_ids = tuple(int(stencil[k]) for k in feature.vertices)
        key_vertices = canonical_vertices(feature.kind, global_ids)
        found.setdefault((feature.kind, key_vertices), ContactCandidate(feature.kind, key_vertices))


def construct_constraint_set(
    positions: np.ndarray,
    edges: np.ndarray,
    faces: np.ndarray,
    dhat_squared: float,
) -> CandidateSet:
    """距離 sqrt(dhat_squared) 未満の接触候補集合を構築する.

    Args:
        positions: (N, dim) 現在の節点座標
        edges: (n_edges, 2) 境界辺
        faces: (n_faces, 3) 境界三角形（2D では空）
        dhat_squared: 作用距離の二乗 d̂²

    Returns:
        CandidateSet
    """
    positions = np.asarray(positions, dtype=float)
    edges = np.asarray(edges, dtype=np.int64).reshape(-1, 2)
    faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
    margin = float(np.sqrt(dhat_squared))
    found: dict[tuple[CandidateKind, tuple[int, ...]], ContactCandidate] = {}

    if len(faces) == 0:
        vertices = boundary_vertices(edges)[:, None]
        lo_v, hi_v = compute_aabbs(positions, vertices, margin)
        lo_e, hi_e = compute_aabbs(positions, edges)
        pairs = broadphase_aabb(lo_v, hi_v, lo_e, hi_e)
        _collect(positions, pairs, vertices, edges, CandidateKind.VERTEX_EDGE, dhat_squared, found)
    else:
        vertices = boundary_vertices(faces)[:, None]
        lo_v, hi_v = compute_aabbs(positions, vertices, margin)
        lo_f, hi_f = compute_aabbs(positions, faces)
        pairs = broadphase_aabb(lo_v, hi_v, lo_f, hi_f)
        _collect(positions, pairs, vertices, faces, CandidateKind.VERTEX_FACE, dhat_squared, found)

        lo_e, hi_e = compute_aabbs(positions, edges, 0.5 * margin)
        pairs = broadphase_aabb(lo_e, hi_e)
        _collect(positions, pairs, edges, edges, CandidateKind.EDGE_EDGE, dhat_squared, found)

    candidates = CandidateSet(list(found.values()))
    logger.debug("Contact candidates: %d %s", len(candidates), candidates.counts())
    return candidates
