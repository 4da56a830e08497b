"""単体メッシュの境界抽出.

接触計算に渡す境界形状（2D: 境界線分、3D: 境界三角形とその辺）を
体積要素の接続配列から取り出す。

ファセットの向き:
  親要素の節点順序を保ったまま取り出すため、参照配置で正の向きの要素からは
  外向き（2D: 反時計回り、3D: 外向き法線）のファセットが得られる。
"""

from __future__ import annotations

import numpy as np

# 要素の局所ファセット（親要素に対して外向きになる節点順）
_TRI_FACETS = np.array([[0, 1], [1, 2], [2, 0]], dtype=np.int64)
_TET_FACETS = np.array([[0, 2, 1], [0, 1, 3], [0, 3, 2], [1, 2, 3]], dtype=np.int64)


def boundary_facets(elements: np.ndarray) -> np.ndarray:
    """ちょうど 1 要素にだけ属するファセットを返す.

    Args:
        elements: (n_e, 3) 三角形または (n_e, 4) 四面体の接続配列

    Returns:
        facets: 2D は (n_b, 2) 線分、3D は (n_b, 3) 三角形
    """
    elements = np.asarray(elements, dtype=np.int64)
    if elements.ndim != 2 or elements.shape[1] not in (3, 4):
        raise ValueError(f"elements は (n, 3) または (n, 4): {elements.shape}")
    local = _TRI_FACETS if elements.shape[1] == 3 else _TET_FACETS

    facets = elements[:, local].reshape(-1, local.shape[1])
    keys = np.sort(facets, axis=1)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    on_boundary = counts[inverse.ravel()] == 1
    return facets[on_boundary]


def facet_edges(faces: np.ndarray) -> np.ndarray:
    """三角形ファセット群の一意な辺 (n_edges, 2)（各行は昇順）."""
    faces = np.asarray(faces, dtype=np.int64)
    if faces.size == 0:
        return np.zeros((0, 2), dtype=np.int64)
    edges = faces[:, [[0, 1], [1, 2], [2, 0]]].reshape(-1, 2)
    return np.unique(np.sort(edges, axis=1), axis=0)


def boundary_vertices(facets: np.ndarray) -> np.ndarray:
    """境界ファセットに含まれる節点（昇順・一意）."""
    return np.unique(np.asarray(facets, dtype=np.int64))
