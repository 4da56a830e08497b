"""連続衝突判定（CCD: Continuous Collision Detection）.

開始配置 V0 から終了配置 V1 への線形運動 V(t) = V0 + t (V1 − V0), t ∈ [0, 1]
の途中でプリミティブ同士が接触するかを判定する。

  2D 節点–辺:     共線条件 (e1 − e0) × (p − e0) = 0            （t の 2 次式）
  3D 節点–三角形: 共面条件 det[t1 − t0, t2 − t0, p − t0] = 0  （t の 3 次式）
  3D 辺–辺:       共面条件 det[a1 − a0, b0 − a0, b1 − a0] = 0 （t の 3 次式）

多項式の [0, 1] 内の実根で実際に距離 0（許容差内）になるかを確かめる。
運動全体で条件が恒等的に成り立つ（多項式が零）場合は時刻をサンプリングして
距離を調べる。候補対は swept AABB の broadphase で絞り込む。
"""

from __future__ import annotations

import logging

import numpy as np
from numpy.polynomial import Polynomial

from nlfem.contact.broadphase import broadphase_aabb, compute_swept_aabbs
from nlfem.contact.distance import CandidateKind, primitive_distance
from nlfem.mesh import boundary_vertices

logger = logging.getLogger(__name__)

# 根の虚部・範囲判定の許容差
_ROOT_TOL = 1e-10
# 恒等的に条件が成り立つ運動のサンプル数
_N_DEGENERATE_SAMPLES = 64


def _linear(x0: np.ndarray, x1: np.ndarray) -> list[Polynomial]:
    """座標成分ごとの 1 次多項式 x0 + t (x1 − x0)."""
    return [Polynomial([a, b - a]) for a, b in zip(x0, x1)]


def _sub(a: list[Polynomial], b: list[Polynomial]) -> list[Polynomial]:
    return [p - q for p, q in zip(a, b)]


def _cross2(a: list[Polynomial], b: list[Polynomial]) -> Polynomial:
    return a[0] * b[1] - a[1] * b[0]


def _det3(a: list[Polynomial], b: list[Polynomial], c: list[Polynomial]) -> Polynomial:
    return (
        a[0] * (b[1] * c[2] - b[2] * c[1])
        - a[1] * (b[0] * c[2] - b[2] * c[0])
        + a[2] * (b[0] * c[1] - b[1] * c[0])
    )


def _condition_polynomial(X0: np.ndarray, X1: np.ndarray, kind: CandidateKind) -> Polynomial:
    P = [_linear(X0[i], X1[i]) for i in range(len(X0))]
    if kind is CandidateKind.VERTEX_EDGE:
        p, e0, e1 = P
        return _cross2(_sub(e1, e0), _sub(p, e0))
    if kind is CandidateKind.VERTEX_FACE:
        p, t0, t1, t2 = P
        return _det3(_sub(t1, t0), _sub(t2, t0), _sub(p, t0))
    a0, a1, b0, b1 = P
    return _det3(_sub(a1, a0), _sub(b0, a0), _sub(b1, a0))


def _candidate_times(poly: Polynomial, scale: float) -> np.ndarray | None:
    """条件多項式の [0, 1] 内の実根。恒等的に零なら None."""
    coef = poly.coef
    if np.all(np.abs(coef) <= _ROOT_TOL * scale):
        return None
    poly = poly.trim(tol=_ROOT_TOL * scale)
    if poly.degree() < 1:
        return np.zeros(0)
    roots = poly.roots()
    real = roots[np.abs(roots.imag) <= 1e-8].real
    return real[(real >= -_ROOT_TOL) & (real <= 1.0 + _ROOT_TOL)]


def primitives_collide(
    X0: np.ndarray,
    X1: np.ndarray,
    kind: CandidateKind,
    tolerance: float = 1e-8,
) -> bool:
    """1 組のプリミティブ対が線形運動中に接触するか.

    Args:
        X0: (n, dim) 開始時の節点座標（ステンシル順）
        X1: (n, dim) 終了時の節点座標
        kind: VERTEX_EDGE（2D）、VERTEX_FACE または EDGE_EDGE（3D）
        tolerance: 接触とみなす距離（プリミティブ寸法に対する相対値）

    Returns:
        接触すれば True
    """
    X0 = np.asarray(X0, dtype=float)
    X1 = np.asarray(X1, dtype=float)
    length = max(float(np.ptp(np.vstack([X0, X1]), axis=0).max()), 1e-300)
    dist_tol_sq = (tolerance * length) ** 2

    def _touching(t: float) -> bool:
        Xt = X0 + t * (X1 - X0)
        return primitive_distance(Xt, kind) <= dist_tol_sq

    # 条件多項式は長さの (dim) 乗のオーダー
    scale = length ** X0.shape[1]
    times = _candidate_times(_condition_polynomial(X0, X1, kind), scale)
    if times is None:
        times = np.linspace(0.0, 1.0, _N_DEGENERATE_SAMPLES + 1)
    return any(_touching(float(np.clip(t, 0.0, 1.0))) for t in times)


def is_step_collision_free(
    positions0: np.ndarray,
    positions1: np.ndarray,
    edges: np.ndarray,
    faces: np.ndarray,
    *,
    tolerance: float = 1e-8,
) -> bool:
    """positions0 → positions1 の線形運動が衝突しないか.

    Args:
        positions0: (N, dim) 開始配置
        positions1: (N, dim) 終了配置
        edges: (n_edges, 2) 境界辺
        faces: (n_faces, 3) 境界三角形（2D では空）
        tolerance: 接触とみなす相対距離

    Returns:
        途中で接触が無ければ True
    """
    V0 = np.asarray(positions0, dtype=float)
    V1 = np.asarray(positions1, dtype=float)
    if V0.shape != V1.shape:
        raise ValueError(f"開始・終了配置の形状が一致しません: {V0.shape} != {V1.shape}")
    edges = np.asarray(edges, dtype=np.int64).reshape(-1, 2)
    faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)

    if len(faces) == 0:
        checks = [(boundary_vertices(edges)[:, None], edges, CandidateKind.VERTEX_EDGE, False)]
    else:
        checks = [
            (boundary_vertices(faces)[:, None], faces, CandidateKind.VERTEX_FACE, False),
            (edges, edges, CandidateKind.EDGE_EDGE, True),
        ]

    for prim_a, prim_b, kind, self_pairs in checks:
        lo_a, hi_a = compute_swept_aabbs(V0, V1, prim_a)
        if self_pairs:
            pairs = broadphase_aabb(lo_a, hi_a)
        else:
            lo_b, hi_b = compute_swept_aabbs(V0, V1, prim_b)
            pairs = broadphase_aabb(lo_a, hi_a, lo_b, hi_b)
        for i, j in pairs:
            stencil = [*prim_a[i], *prim_b[j]]
            if len(set(stencil)) != len(stencil):
                continue
            if primitives_collide(V0[stencil], V1[stencil], kind, tolerance):
                logger.debug("Collision detected: %s %s", kind.value, stencil)
                return False
    return True
