"""一次単体要素（TRI3 / TET4）の要素計算.

定ひずみ要素のため形状関数勾配は要素ごとに一定で、
全要素分を一括（ベクトル化）で前計算する。

記号:
  n_e: 要素数, k: 要素節点数 (= dim + 1), m: 要素 DOF 数 (= k * dim)
  dN[e, a, j] = ∂N_a/∂X_j（参照配置）
"""

from __future__ import annotations

from math import factorial

import numpy as np

# Voigt 表記のせん断成分の並び（materials.elastic.constitutive_3d と同じ）
_VOIGT_SHEAR = {2: [(0, 1)], 3: [(1, 2), (0, 2), (0, 1)]}


def simplex_shape_gradients(
    nodes: np.ndarray,
    elements: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """全要素の形状関数勾配と体積（2D は面積）を計算する.

    Args:
        nodes: (N, dim) 参照配置の節点座標
        elements: (n_e, dim + 1) 接続配列

    Returns:
        dN: (n_e, dim + 1, dim) 形状関数勾配
        measure: (n_e,) 要素体積

    Raises:
        ValueError: 零体積または反転要素（detJ <= 0）
    """
    nodes = np.asarray(nodes, dtype=float)
    elements = np.asarray(elements, dtype=np.int64)
    dim = nodes.shape[1]
    if elements.shape[1] != dim + 1:
        raise ValueError(f"{dim}D 単体要素の節点数は {dim + 1}: {elements.shape[1]}")

    coords = nodes[elements]  # (n_e, k, dim)
    # J[e, i, j] = ∂X_i/∂ξ_j
    J = np.transpose(coords[:, 1:, :] - coords[:, :1, :], (0, 2, 1))
    detJ = np.linalg.det(J)
    if np.any(detJ <= 0.0):
        bad = int(np.flatnonzero(detJ <= 0.0)[0])
        raise ValueError(f"零体積または反転要素（要素 {bad}, detJ={detJ[bad]:.3e}）")

    dN_ref = np.vstack([-np.ones((1, dim)), np.eye(dim)])  # (k, dim)
    invJ = np.linalg.inv(J)
    dN = np.einsum("aj,eji->eai", dN_ref, invJ)
    measure = detJ / factorial(dim)
    return dN, measure


def element_dofs(elements: np.ndarray, dim: int) -> np.ndarray:
    """要素 DOF インデックスを一括計算する（節点優先インターリーブ）.

    Returns:
        edofs: (n_e, k * dim)
    """
    elements = np.asarray(elements, dtype=np.int64)
    n_e = len(elements)
    offsets = np.arange(dim, dtype=np.int64)
    return (elements[:, :, None] * dim + offsets[None, None, :]).reshape(n_e, -1)


def coo_indices(edofs: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """要素 DOF から要素行列の COO row/col を一括計算する.

    Returns:
        (rows, cols): それぞれ (n_e * m * m,)
    """
    m = edofs.shape[1]
    rows = np.repeat(edofs, m, axis=1).ravel()
    cols = np.tile(edofs, (1, m)).ravel()
    return rows, cols


def displacement_gradients(u_elem: np.ndarray, dN: np.ndarray) -> np.ndarray:
    """変位勾配 H_ij = ∂u_i/∂X_j を全要素で計算する.

    Args:
        u_elem: (n_e, k, dim) 要素節点変位
        dN: (n_e, k, dim)

    Returns:
        H: (n_e, dim, dim)
    """
    return np.einsum("eai,eaj->eij", u_elem, dN)


def strain_displacement_matrices(dN: np.ndarray) -> np.ndarray:
    """微小ひずみの B マトリクス（Voigt, 工学せん断ひずみ）.

    2D: ε = [εxx, εyy, γxy]
    3D: ε = [εxx, εyy, εzz, γyz, γxz, γxy]

    Returns:
        B: (n_e, n_voigt, k * dim)
    """
    n_e, k, dim = dN.shape
    shear = _VOIGT_SHEAR[dim]
    B = np.zeros((n_e, dim + len(shear), k * dim), dtype=float)
    for a in range(k):
        for i in range(dim):
            B[:, i, a * dim + i] = dN[:, a, i]
        for s, (i, j) in enumerate(shear):
            B[:, dim + s, a * dim + i] = dN[:, a, j]
            B[:, dim + s, a * dim + j] = dN[:, a, i]
    return B
