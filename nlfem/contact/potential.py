"""バリアポテンシャル B = Σ_c m_c b(d_c², d̂²) とその勾配・ヘッセ行列.

候補集合の各ステンシルについて二乗距離 d² を評価し、バリア関数を合成する。

  ∇B   = Σ b'(d²) ∇d²
  ∇²B  = Σ [ b''(d²) ∇d² ∇d²ᵀ + b'(d²) ∇²d² ]

辺–辺ステンシルは平行に近づくと距離の微分が悪条件になるため、
c = |ea × eb|² に関する C¹ のモリファイア m(c) を掛ける:

  m(c) = (2 − c/ε_x) c/ε_x   (c < ε_x),   1   (c ≥ ε_x)
  ε_x  = 1e-3 |ea_rest|² |eb_rest|²

m は c → 0 で 0 に、c = ε_x で値・1 階微分とも連続に 1 へつながる。
完全に平行な辺（c = 0）は寄与 0。
勾配・ヘッセ行列は節点優先インターリーブの全体 DOF 順。
"""

from __future__ import annotations

from collections.abc import Iterator

import numpy as np
import scipy.sparse as sp

from nlfem.contact.barrier import barrier, barrier_gradient, barrier_hessian
from nlfem.contact.constraints import CandidateSet, ContactCandidate
from nlfem.contact.distance import (
    CandidateKind,
    stencil_distance,
    stencil_distance_gradient,
    stencil_distance_hessian,
)
from nlfem.reduction import points_to_dofs
from nlfem.sparse_cache import SparseMatrixCache

# 平行判定の相対しきい値
PARALLEL_EDGE_TOL = 1e-3

# ea = x1 − x0, eb = x3 − x2
_EDGE_INCIDENCE = np.array([[-1.0, 1.0, 0.0, 0.0], [0.0, 0.0, -1.0, 1.0]])


# ========== 辺–辺モリファイア ==========


def edge_edge_mollifier_threshold(X_rest: np.ndarray) -> float:
    """参照配置の辺長から ε_x = tol |ea_rest|² |eb_rest|² を求める."""
    ea, eb = _EDGE_INCIDENCE @ np.asarray(X_rest, dtype=float)
    return PARALLEL_EDGE_TOL * float(ea @ ea) * float(eb @ eb)


def edge_edge_mollifier(c: float, eps_x: float) -> tuple[float, float, float]:
    """モリファイア m(c) と 1 階・2 階微分."""
    if c >= eps_x:
        return 1.0, 0.0, 0.0
    t = c / eps_x
    return (2.0 - t) * t, 2.0 * (1.0 - t) / eps_x, -2.0 / eps_x**2


def edge_cross_squared(X: np.ndarray) -> tuple[float, np.ndarray, np.ndarray]:
    """c = |ea × eb|² = |ea|²|eb|² − (ea·eb)² とその勾配 (4 dim,)・ヘッセ行列.

    Args:
        X: (4, dim) 辺–辺ステンシルの節点座標 (a0, a1, b0, b1)
    """
    X = np.asarray(X, dtype=float)
    dim = X.shape[1]
    ea, eb = _EDGE_INCIDENCE @ X
    aa, bb, ab = float(ea @ ea), float(eb @ eb), float(ea @ eb)
    eye = np.eye(dim)

    g_e = 2.0 * np.concatenate([bb * ea - ab * eb, aa * eb - ab * ea])
    H_ab = 2.0 * (2.0 * np.outer(ea, eb) - np.outer(eb, ea) - ab * eye)
    H_e = np.block(
        [
            [2.0 * (bb * eye - np.outer(eb, eb)), H_ab],
            [H_ab.T, 2.0 * (aa * eye - np.outer(ea, ea))],
        ]
    )
    T = np.kron(_EDGE_INCIDENCE, eye)
    return aa * bb - ab * ab, T.T @ g_e, T.T @ H_e @ T


# ========== ステンシルごとの局所量 ==========


def _local_terms(
    rest_positions: np.ndarray,
    positions: np.ndarray,
    candidate: ContactCandidate,
    dhat_squared: float,
    order: int,
) -> tuple[float, np.ndarray | None, np.ndarray | None]:
    """1 ステンシルの (値, 勾配, ヘッセ行列)。order 階までの微分のみ計算する."""
    idx = list(candidate.vertices)
    X = positions[idx]
    kind = candidate.kind
    n = X.size

    mollified = False
    m, dm, d2m = 1.0, 0.0, 0.0
    if kind is CandidateKind.EDGE_EDGE:
        eps_x = edge_edge_mollifier_threshold(rest_positions[idx])
        c, gc, Hc = edge_cross_squared(X)
        if c <= 0.0:
            return 0.0, np.zeros(n), np.zeros((n, n))
        mollified = c < eps_x
        m, dm, d2m = edge_edge_mollifier(c, eps_x)

    d2 = stencil_distance(X, kind)
    b = float(barrier(d2, dhat_squared))
    if order == 0:
        return m * b, None, None

    db = float(barrier_gradient(d2, dhat_squared))
    g = stencil_distance_gradient(X, kind)
    grad = m * db * g
    if mollified:
        grad += dm * b * gc
    if order == 1:
        return m * b, grad, None

    d2b = float(barrier_hessian(d2, dhat_squared))
    H = m * (d2b * np.outer(g, g) + db * stencil_distance_hessian(X, kind))
    if mollified:
        H += d2m * b * np.outer(gc, gc) + dm * b * Hc
        H += dm * db * (np.outer(gc, g) + np.outer(g, gc))
    return m * b, grad, H


def _terms(
    rest_positions: np.ndarray,
    positions: np.ndarray,
    candidates: CandidateSet,
    dhat_squared: float,
    order: int,
) -> Iterator[tuple[ContactCandidate, float, np.ndarray | None, np.ndarray | None]]:
    rest_positions = np.asarray(rest_positions, dtype=float)
    positions = np.asarray(positions, dtype=float)
    for c in candidates:
        yield (c, *_local_terms(rest_positions, positions, c, dhat_squared, order))


def _stencil_dofs(vertices: tuple[int, ...], dim: int) -> np.ndarray:
    v = np.asarray(vertices, dtype=np.int64)
    return (v[:, None] * dim + np.arange(dim)[None, :]).ravel()


def project_to_psd(H: np.ndarray) -> np.ndarray:
    """対称行列の負の固有値を 0 に切り上げる."""
    eigvals, eigvecs = np.linalg.eigh(0.5 * (H + H.T))
    return (eigvecs * np.maximum(eigvals, 0.0)) @ eigvecs.T


def compute_barrier_potential(
    rest_positions: np.ndarray,
    positions: np.ndarray,
    edges: np.ndarray,
    faces: np.ndarray,
    candidates: CandidateSet,
    dhat_squared: float,
) -> float:
    """バリアポテンシャルの総和（貫通・接触していれば +inf）."""
    terms = _terms(rest_positions, positions, candidates, dhat_squared, 0)
    return float(sum(value for _, value, _, _ in terms))


def compute_barrier_potential_gradient(
    rest_positions: np.ndarray,
    positions: np.ndarray,
    edges: np.ndarray,
    faces: np.ndarray,
    candidates: CandidateSet,
    dhat_squared: float,
) -> np.ndarray:
    """バリアポテンシャルの勾配 (N * dim,)."""
    positions = np.asarray(positions, dtype=float)
    dim = positions.shape[1]
    grad = np.zeros_like(positions)
    for c, _, g, _ in _terms(rest_positions, positions, candidates, dhat_squared, 1):
        np.add.at(grad, list(c.vertices), g.reshape(-1, dim))
    return points_to_dofs(grad)


def compute_barrier_potential_hessian(
    rest_positions: np.ndarray,
    positions: np.ndarray,
    edges: np.ndarray,
    faces: np.ndarray,
    candidates: CandidateSet,
    dhat_squared: float,
    *,
    project_hessian_to_psd: bool = False,
) -> sp.csr_matrix:
    """バリアポテンシャルのヘッセ行列 (N * dim, N * dim) CSR.

    Args:
        project_hessian_to_psd: ステンシルごとの局所ヘッセ行列を半正定値に射影するか
    """
    positions = np.asarray(positions, dtype=float)
    dim = positions.shape[1]
    cache = SparseMatrixCache(positions.size)
    for c, _, _, H in _terms(rest_positions, positions, candidates, dhat_squared, 2):
        if project_hessian_to_psd:
            H = project_to_psd(H)
        dofs = _stencil_dofs(c.vertices, dim)
        n = dofs.size
        cache.add_values(np.repeat(dofs, n), np.tile(dofs, n), H.ravel())
    return cache.get_matrix()
