"""接触ステンシルの距離と、その勾配・ヘッセ行列.

距離はすべて二乗距離 d² で扱う。ステンシルは局所節点 X (n, dim) の
重み付き和で残差ベクトルを表す:

    r(β) = Xᵀ w(β),  w(β) = w0 + Σ_i β_i D_i

β は最近接点のパラメータ（辺上の位置、三角形の重心座標など）で、
d²(X) = min_β |r(β)|²。最適 β は G β = −g·r0（G_ij = g_i·g_j, g_i = Xᵀ D_i）。

  VERTEX_VERTEX (p, q):          w0 = [1, −1]
  VERTEX_EDGE   (p, e0, e1):     w0 = [1, −1, 0],     D = [[0, 1, −1]]
  VERTEX_FACE   (p, t0, t1, t2): w0 = [1, −1, 0, 0],  D = [[0, 1, −1, 0], [0, 1, 0, −1]]
  EDGE_EDGE     (a0, a1, b0, b1): w0 = [1, 0, −1, 0], D = [[−1, 1, 0, 0], [0, 0, 1, −1]]

勾配は包絡線定理から ∂d²/∂X_k = 2 w_k r。ヘッセ行列は β を消去した
Schur 補元 H = F_xx − F_xβ F_ββ⁻¹ F_βx（β が内点で最適なときに正確）。

ステンシルは β に制約を課さない（直線・平面への距離）。実際の最近接
特徴（端点・辺・内部）の判定は closest_feature が行う。
"""

from __future__ import annotations

from enum import Enum
from typing import NamedTuple

import numpy as np


class CandidateKind(Enum):
    """接触ステンシルの種類."""

    VERTEX_VERTEX = "vertex_vertex"
    VERTEX_EDGE = "vertex_edge"
    VERTEX_FACE = "vertex_face"
    EDGE_EDGE = "edge_edge"


_STENCILS: dict[CandidateKind, tuple[np.ndarray, np.ndarray]] = {
    CandidateKind.VERTEX_VERTEX: (np.array([1.0, -1.0]), np.zeros((0, 2))),
    CandidateKind.VERTEX_EDGE: (np.array([1.0, -1.0, 0.0]), np.array([[0.0, 1.0, -1.0]])),
    CandidateKind.VERTEX_FACE: (
        np.array([1.0, -1.0, 0.0, 0.0]),
        np.array([[0.0, 1.0, -1.0, 0.0], [0.0, 1.0, 0.0, -1.0]]),
    ),
    CandidateKind.EDGE_EDGE: (
        np.array([1.0, 0.0, -1.0, 0.0]),
        np.array([[-1.0, 1.0, 0.0, 0.0], [0.0, 0.0, 1.0, -1.0]]),
    ),
}

# パラメータの実行可能域判定の許容差
_PARAM_TOL = 1e-12


class ClosestFeature(NamedTuple):
    """プリミティブ対の最近接特徴.

    Attributes:
        kind: 最近接特徴のステンシル種類
        vertices: ステンシルを構成する局所節点インデックス（ステンシル順）
        distance_squared: 二乗距離
    """

    kind: CandidateKind
    vertices: tuple[int, ...]
    distance_squared: float


def stencil_size(kind: CandidateKind) -> int:
    """ステンシルの節点数."""
    return _STENCILS[kind][0].size


def _solve_parameters(
    X: np.ndarray, kind: CandidateKind
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """最適パラメータを解き (β, w, r, g, G) を返す.

    Raises:
        np.linalg.LinAlgError: G が特異（縮退した辺・三角形、平行な辺）
    """
    w0, D = _STENCILS[kind]
    X = np.asarray(X, dtype=float)
    if X.shape[0] != stencil_size(kind):
        raise ValueError(f"{kind.value} ステンシルの節点数は {stencil_size(kind)}: {X.shape[0]}")
    r0 = X.T @ w0
    if D.shape[0] == 0:
        return np.zeros(0), w0, r0, np.zeros((0, X.shape[1])), np.zeros((0, 0))

    g = D @ X  # (m, dim)
    G = g @ g.T
    beta = np.linalg.solve(G, -(g @ r0))
    w = w0 + D.T @ beta
    return beta, w, X.T @ w, g, G


def stencil_distance(X: np.ndarray, kind: CandidateKind) -> float:
    """ステンシルの二乗距離 d²."""
    _, _, r, _, _ = _solve_parameters(X, kind)
    return float(r @ r)


def stencil_distance_gradient(X: np.ndarray, kind: CandidateKind) -> np.ndarray:
    """d² の勾配 (n * dim,)（節点優先インターリーブ）."""
    _, w, r, _, _ = _solve_parameters(X, kind)
    return 2.0 * np.outer(w, r).ravel()


def stencil_distance_hessian(X: np.ndarray, kind: CandidateKind) -> np.ndarray:
    """d² のヘッセ行列 (n * dim, n * dim)."""
    _, D = _STENCILS[kind]
    _, w, r, g, G = _solve_parameters(X, kind)
    dim = r.size
    H = 2.0 * np.kron(np.outer(w, w), np.eye(dim))
    if D.shape[0] == 0:
        return H

    # F_xβ[:, i] = 2 (D_i ⊗ r + w ⊗ g_i)
    F_xb = np.stack(
        [2.0 * (np.outer(D[i], r) + np.outer(w, g[i])).ravel() for i in range(D.shape[0])],
        axis=1,
    )
    H -= F_xb @ np.linalg.solve(2.0 * G, F_xb.T)
    return 0.5 * (H + H.T)


# ========== 最近接特徴の判定 ==========


def _feasible(kind: CandidateKind, beta: np.ndarray) -> bool:
    tol = _PARAM_TOL
    if kind is CandidateKind.VERTEX_EDGE:
        return bool(tol < beta[0] < 1.0 - tol)
    if kind is CandidateKind.VERTEX_FACE:
        return bool(beta[0] > tol and beta[1] > tol and beta[0] + beta[1] < 1.0 - tol)
    if kind is CandidateKind.EDGE_EDGE:
        return bool(np.all(beta > tol) and np.all(beta < 1.0 - tol))
    return True


# プリミティブ対ごとの部分特徴（局所インデックス、低次元から順に）
_VV, _VE, _VF, _EE = (
    CandidateKind.VERTEX_VERTEX,
    CandidateKind.VERTEX_EDGE,
    CandidateKind.VERTEX_FACE,
    CandidateKind.EDGE_EDGE,
)
_SUB_FEATURES: dict[CandidateKind, list[tuple[CandidateKind, tuple[int, ...]]]] = {
    _VV: [(_VV, (0, 1))],
    _VE: [(_VV, (0, 1)), (_VV, (0, 2)), (_VE, (0, 1, 2))],
    _VF: [
        (_VV, (0, 1)), (_VV, (0, 2)), (_VV, (0, 3)),
        (_VE, (0, 1, 2)), (_VE, (0, 2, 3)), (_VE, (0, 3, 1)),
        (_VF, (0, 1, 2, 3)),
    ],
    _EE: [
        (_VV, (0, 2)), (_VV, (0, 3)), (_VV, (1, 2)), (_VV, (1, 3)),
        (_VE, (0, 2, 3)), (_VE, (1, 2, 3)), (_VE, (2, 0, 1)), (_VE, (3, 0, 1)),
        (_EE, (0, 1, 2, 3)),
    ],
}  # fmt: skip


def closest_feature(X: np.ndarray, kind: CandidateKind) -> ClosestFeature:
    """プリミティブ対（節点–辺、節点–三角形、辺–辺など）の最近接特徴.

    すべての部分特徴のうち、最適パラメータが実行可能域の内部にあるものの
    最小距離を取る。真の最近接点はいずれかの部分特徴の相対内部にあるため、
    これが正確な距離になる。距離が等しい場合は低次元の特徴を優先する。

    Args:
        X: (n, dim) プリミティブ対の節点座標（ステンシル順）
        kind: プリミティブ対の種類

    Returns:
        ClosestFeature
    """
    X = np.asarray(X, dtype=float)
    best: ClosestFeature | None = None
    for sub_kind, idx in _SUB_FEATURES[kind]:
        try:
            beta, _, r, _, _ = _solve_parameters(X[list(idx)], sub_kind)
        except np.linalg.LinAlgError:
            continue
        if not _feasible(sub_kind, beta):
            continue
        d2 = float(r @ r)
        if best is None or d2 < best.distance_squared:
            best = ClosestFeature(sub_kind, idx, d2)
    assert best is not None
    return best


def primitive_distance(X: np.ndarray, kind: CandidateKind) -> float:
    """プリミティブ対の（パラメータ制約付きの）二乗距離."""
    return closest_feature(X, kind).distance_squared
