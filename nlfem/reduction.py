"""DOF 縮約層: 全体 DOF ベクトルと Dirichlet 消去後の縮約ベクトルの相互変換.

全体ベクトル (full_size,) から拘束 DOF を取り除いたものが縮約ベクトル
(reduced_size,)。reduced_size = full_size - len(boundary_nodes) は
インスタンスの生存期間中不変。

DOF の並び（節点優先インターリーブ）:
    [x0, y0, (z0), x1, y1, (z1), ...]
  DOF ``node * dim + d`` が節点 node の成分 d。混合定式化の圧力 DOF は
  変位ブロック (n_bases * dim) の後ろに続く。
"""

from __future__ import annotations

import numpy as np
import scipy.sparse as sp


def dofs_to_points(flat: np.ndarray, dim: int, n_points: int | None = None) -> np.ndarray:
    """インターリーブ DOF ベクトルを点群 (n, dim) に並べ替える.

    Args:
        flat: (n * dim,) 以上の長さのベクトル。n_points 指定時は先頭のみ使う
        dim: 空間次元
        n_points: 点数。None なら len(flat) // dim（割り切れなければエラー）

    Returns:
        points: (n, dim)。points[i, d] == flat[i * dim + d]
    """
    flat = np.asarray(flat, dtype=float).ravel()
    if n_points is None:
        if flat.size % dim != 0:
            raise ValueError(f"長さ {flat.size} は次元 {dim} で割り切れません。")
        n_points = flat.size // dim
    if flat.size < n_points * dim:
        raise ValueError(f"長さ {flat.size} < {n_points} * {dim}")
    return flat[: n_points * dim].reshape(n_points, dim)


def points_to_dofs(points: np.ndarray) -> np.ndarray:
    """点群 (n, dim) をインターリーブ DOF ベクトルに戻す（dofs_to_points の逆）."""
    return np.ascontiguousarray(points, dtype=float).ravel()


def pad_vector(v: np.ndarray, size: int) -> np.ndarray:
    """ベクトルをゼロ拡張して長さ size にする."""
    v = np.asarray(v, dtype=float)
    if v.shape[0] == size:
        return v
    if v.shape[0] > size:
        raise ValueError(f"長さ {v.shape[0]} を {size} に縮めることはできません。")
    out = np.zeros((size,) + v.shape[1:], dtype=float)
    out[: v.shape[0]] = v
    return out


def pad_matrix(A: sp.spmatrix, size: int) -> sp.csr_matrix:
    """正方疎行列をゼロ拡張して size × size にする."""
    n = A.shape[0]
    if n == size:
        return sp.csr_matrix(A)
    if n > size:
        raise ValueError(f"サイズ {n} を {size} に縮めることはできません。")
    coo = A.tocoo()
    return sp.csr_matrix((coo.data, (coo.row, coo.col)), shape=(size, size))


class DofReduction:
    """Dirichlet 拘束 DOF の消去・復元.

    Args:
        full_size: 全体 DOF 数
        boundary_nodes: 拘束 DOF インデックス（昇順・重複なし・範囲内）

    Attributes:
        full_size: 全体 DOF 数
        reduced_size: 縮約 DOF 数
        boundary_nodes: (n_bc,) 拘束 DOF
        free_dofs: (reduced_size,) 自由 DOF（昇順）
    """

    def __init__(self, full_size: int, boundary_nodes: np.ndarray) -> None:
        bnodes = np.array(boundary_nodes, dtype=np.int64).ravel()
        if bnodes.size > 0:
            if np.any(np.diff(bnodes) <= 0):
                raise ValueError("boundary_nodes は昇順かつ重複なしである必要があります。")
            if bnodes[0] < 0 or bnodes[-1] >= full_size:
                raise ValueError(f"boundary_nodes が範囲 [0, {full_size}) 外です。")

        self.full_size = int(full_size)
        self.boundary_nodes = bnodes
        self.boundary_nodes.setflags(write=False)

        mask = np.ones(self.full_size, dtype=bool)
        mask[bnodes] = False
        self.free_dofs = np.flatnonzero(mask)
        self.reduced_size = self.full_size - bnodes.size

        # 全体 → 縮約インデックス（拘束 DOF は -1）
        self._index = np.full(self.full_size, -1, dtype=np.int64)
        self._index[self.free_dofs] = np.arange(self.reduced_size, dtype=np.int64)

        assert self.free_dofs.size == self.reduced_size

    def full_to_reduced(self, full: np.ndarray) -> np.ndarray:
        """拘束 DOF の成分を取り除く（残りの順序は保存）.

        Args:
            full: (full_size,) または (full_size, k)

        Returns:
            reduced: (reduced_size,) または (reduced_size, k)
        """
        full = np.asarray(full, dtype=float)
        if full.shape[0] != self.full_size:
            raise ValueError(f"全体ベクトル長 {full.shape[0]} != full_size {self.full_size}")
        return full[self.free_dofs]

    def reduced_to_full(self, reduced: np.ndarray, boundary_values: np.ndarray) -> np.ndarray:
        """縮約ベクトルを全体サイズに展開する.

        自由 DOF には reduced を、拘束 DOF には boundary_values の同じ位置の値を
        入れる。拘束 DOF の値は reduced からは復元できない（一方向の写像）。

        Args:
            reduced: (reduced_size,)
            boundary_values: (full_size,) 現在の規定値を保持した全体ベクトル

        Returns:
            full: (full_size,)
        """
        reduced = np.asarray(reduced, dtype=float)
        boundary_values = np.asarray(boundary_values, dtype=float)
        if reduced.shape[0] != self.reduced_size:
            raise ValueError(
                f"縮約ベクトル長 {reduced.shape[0]} != reduced_size {self.reduced_size}"
            )
        if boundary_values.shape[0] != self.full_size:
            raise ValueError(
                f"boundary_values 長 {boundary_values.shape[0]} != full_size {self.full_size}"
            )

        full = np.zeros((self.full_size,) + reduced.shape[1:], dtype=float)
        full[self.free_dofs] = reduced
        full[self.boundary_nodes] = boundary_values[self.boundary_nodes]
        return full

    def reduce_matrix(self, H: sp.spmatrix) -> sp.csr_matrix:
        """全体行列から拘束 DOF の行・列を消去する.

        拘束行 → -1、自由行 → 昇順の連番に写すインデックス表で、
        行・列ともに有効な成分だけを残す。対称性は保存される。

        Args:
            H: (full_size, full_size) 疎行列

        Returns:
            H_red: (reduced_size, reduced_size) CSR（正準形式）
        """
        if H.shape != (self.full_size, self.full_size):
            raise ValueError(f"行列サイズ {H.shape} != ({self.full_size}, {self.full_size})")

        coo = sp.coo_matrix(H)
        rows = self._index[coo.row]
        cols = self._index[coo.col]
        keep = (rows >= 0) & (cols >= 0)

        H_red = sp.csr_matrix(
            (coo.data[keep], (rows[keep], cols[keep])),
            shape=(self.reduced_size, self.reduced_size),
        )
        H_red.sum_duplicates()
        return H_red
