"""Broadphase 接触候補探索（AABB格子）.

プリミティブ（節点・辺・三角形）の AABB (Axis-Aligned Bounding Box) を計算し、
空間ハッシュ格子による O(n) の候補ペア抽出を行う。次元（2D/3D）は
座標配列の列数で決まる。

連続衝突判定では、開始・終了配置の両方を包む swept AABB を使う。
"""

from __future__ import annotations

import itertools
from collections import defaultdict

import numpy as np


def compute_aabbs(
    positions: np.ndarray,
    primitives: np.ndarray,
    margin: float = 0.0,
) -> tuple[np.ndarray, np.ndarray]:
    """プリミティブ群の AABB を一括計算する.

    Args:
        positions: (N, dim) 節点座標
        primitives: (n, k) 節点インデックス（節点そのものなら (n, 1)）
        margin: 追加マージン（探索余裕）

    Returns:
        (lo, hi): それぞれ (n, dim)
    """
    pts = np.asarray(positions, dtype=float)[np.asarray(primitives, dtype=np.int64)]
    return pts.min(axis=1) - margin, pts.max(axis=1) + margin


def compute_swept_aabbs(
    positions0: np.ndarray,
    positions1: np.ndarray,
    primitives: np.ndarray,
    margin: float = 0.0,
) -> tuple[np.ndarray, np.ndarray]:
    """線形運動 positions0 → positions1 を包む swept AABB."""
    lo0, hi0 = compute_aabbs(positions0, primitives, margin)
    lo1, hi1 = compute_aabbs(positions1, primitives, margin)
    return np.minimum(lo0, lo1), np.maximum(hi0, hi1)


def aabb_overlap(
    lo_a: np.ndarray,
    hi_a: np.ndarray,
    lo_b: np.ndarray,
    hi_b: np.ndarray,
) -> bool | np.ndarray:
    """AABB が重なるか判定（最後の軸が座標。先頭の軸はバッチとして扱う）."""
    overlap = np.all(lo_a <= hi_b, axis=-1) & np.all(lo_b <= hi_a, axis=-1)
    return bool(overlap) if np.ndim(overlap) == 0 else overlap


def _bin_boxes(
    lo: np.ndarray,
    hi: np.ndarray,
    inv_cell: float,
) -> dict[tuple[int, ...], list[int]]:
    """各 AABB が占めるセルにインデックスをビニングする."""
    ilo_all = np.floor(lo * inv_cell).astype(np.intp)
    ihi_all = np.floor(hi * inv_cell).astype(np.intp)

    grid: dict[tuple[int, ...], list[int]] = defaultdict(list)
    for i in range(len(lo)):
        ranges = [range(int(a), int(b) + 1) for a, b in zip(ilo_all[i], ihi_all[i])]
        for cell in itertools.product(*ranges):
            grid[cell].append(i)
    return grid


def broadphase_aabb(
    lo_a: np.ndarray,
    hi_a: np.ndarray,
    lo_b: np.ndarray | None = None,
    hi_b: np.ndarray | None = None,
    *,
    cell_size: float | None = None,
) -> list[tuple[int, int]]:
    """AABB 空間ハッシュによる候補ペア探索.

    B を省略すると A 内の自己ペア (i < j)、指定すると A×B の交差ペア
    (i ∈ A, j ∈ B) を返す。同一セルを共有し、かつ AABB が重なるペアのみ残す。

    Args:
        lo_a, hi_a: (n_a, dim) A の AABB
        lo_b, hi_b: (n_b, dim) B の AABB（None なら自己ペア）
        cell_size: 格子セルサイズ。None なら自動推定

    Returns:
        候補ペア (i, j) のリスト（昇順）
    """
    self_pairs = lo_b is None
    if self_pairs:
        lo_b, hi_b = lo_a, hi_a
    n_a, n_b = len(lo_a), len(lo_b)
    if n_a == 0 or n_b == 0 or (self_pairs and n_a < 2):
        return []

    # セルサイズ自動推定
    if cell_size is None:
        sizes = np.concatenate([np.max(hi_a - lo_a, axis=1), np.max(hi_b - lo_b, axis=1)])
        extent = float(
            np.max(np.maximum(hi_a.max(0), hi_b.max(0)) - np.minimum(lo_a.min(0), lo_b.min(0)))
        )
        cell_size = max(float(np.mean(sizes)) * 1.5, extent * 1e-6, 1e-30)
    inv_cell = 1.0 / cell_size

    grid_a = _bin_boxes(lo_a, hi_a, inv_cell)
    grid_b = grid_a if self_pairs else _bin_boxes(lo_b, hi_b, inv_cell)

    # 候補ペア収集（重複除去のみ、AABB チェックは後でバッチ処理）
    seen: set[tuple[int, int]] = set()
    for cell, a_indices in grid_a.items():
        b_indices = grid_b.get(cell)
        if not b_indices:
            continue
        if self_pairs:
            for ia, ib in itertools.combinations(a_indices, 2):
                seen.add((ia, ib) if ia < ib else (ib, ia))
        else:
            for ia in a_indices:
                for ib in b_indices:
                    seen.add((ia, ib))

    if not seen:
        return []

    # バッチ AABB 重複判定
    pairs_arr = np.array(sorted(seen), dtype=np.intp)
    pi, pj = pairs_arr[:, 0], pairs_arr[:, 1]
    overlap = aabb_overlap(lo_a[pi], hi_a[pi], lo_b[pj], hi_b[pj])
    return [(int(r[0]), int(r[1])) for r in pairs_arr[overlap]]
