"""疎行列アセンブリキャッシュ.

Newton 反復ではヘッセ行列の非ゼロパターンは不変で、値だけが毎回変わる。
パターン探索（COO → CSR の整列・重複加算）を初回だけ行い、以降は
フラットな値バッファへ直接加算して CSR を再構築する。

2 段階プロトコル:
  コールド（写像なし）:
    add_value は (row, col, value) トリプレットを蓄積する。
    prune() でトリプレットを作業行列へ圧縮（写像が無い間のメモリ上限対策）。
    get_matrix(compute_mapping=True) で残りを圧縮し、
    行 → [(col, slot), ...] の写像とフラット値バッファを記録する。
  ウォーム（写像あり）:
    add_value は行の候補リストから slot を探して値バッファへ加算する。
    キャッシュ済みパターンに無い位置への加算は契約違反（ValueError）。
    get_matrix() は値バッファと保存済み indptr/indices から CSR を組み立て、
    副作用として値バッファをゼロに戻す。

並列アセンブリ（fan-out / fan-in）:
    各ワーカーが SparseMatrixCache.like(blueprint) で構造を共有した
    専用キャッシュに加算し、全ワーカー終了後に += で合算する。
"""

from __future__ import annotations

import logging

import numpy as np
import scipy.sparse as sp

logger = logging.getLogger(__name__)


def _csr_from_triplets(
    rows: np.ndarray, cols: np.ndarray, vals: np.ndarray, size: int
) -> sp.csr_matrix:
    """トリプレットから正準 CSR を作る（明示的ゼロも構造として残す）."""
    mat = sp.csr_matrix((vals, (rows, cols)), shape=(size, size))
    mat.sum_duplicates()
    return mat


def _merge_csr(a: sp.csr_matrix, b: sp.csr_matrix) -> sp.csr_matrix:
    """2 つの CSR の和（構造的ゼロを落とさない連結加算）."""
    ca = a.tocoo()
    cb = b.tocoo()
    return _csr_from_triplets(
        np.concatenate([ca.row, cb.row]),
        np.concatenate([ca.col, cb.col]),
        np.concatenate([ca.data, cb.data]),
        a.shape[0],
    )


class SparseMatrixCache:
    """パターン再利用型の疎行列アセンブラ.

    Args:
        size: 正方行列のサイズ

    Attributes:
        size: 行列サイズ
    """

    def __init__(self, size: int = 0) -> None:
        self.size = int(size)
        self._rows: list[np.ndarray] = []
        self._cols: list[np.ndarray] = []
        self._vals: list[np.ndarray] = []
        self._mat = sp.csr_matrix((self.size, self.size), dtype=float)

        # ウォーム状態の構造（写像が無い間は None）
        self._mapping: list[list[tuple[int, int]]] | None = None
        self._indptr: np.ndarray | None = None
        self._indices: np.ndarray | None = None
        self._keys: np.ndarray | None = None
        self._values = np.zeros(0, dtype=float)

    # ------------------------------------------------------------------
    # 構築・初期化
    # ------------------------------------------------------------------

    @classmethod
    def like(cls, other: SparseMatrixCache) -> SparseMatrixCache:
        """other の構造とサイズを共有し、数値をゼロにした新しいキャッシュ."""
        out = cls(other.size)
        out.init_like(other)
        return out

    def init(self, size: int) -> None:
        """サイズを設定して数値をクリアする.

        写像計算済みのキャッシュを別サイズで初期化することはできない。
        """
        if self._mapping is not None and self.size != size:
            raise ValueError(
                f"写像計算済みのキャッシュ (size={self.size}) を size={size} に変更できません。"
            )
        self.size = int(size)
        self._clear_triplets()
        self._mat = sp.csr_matrix((self.size, self.size), dtype=float)

    def init_like(self, other: SparseMatrixCache) -> None:
        """other の構造（写像・インデックス配列）とサイズをコピーし、数値をクリアする.

        構造配列は読み取り専用として共有する。
        """
        self.size = other.size
        self._mapping = other._mapping
        self._indptr = other._indptr
        self._indices = other._indices
        self._keys = other._keys
        self._values = np.zeros_like(other._values)
        self._clear_triplets()
        self._mat = sp.csr_matrix((self.size, self.size), dtype=float)

    def set_zero(self) -> None:
        """トリプレット・作業行列・値バッファをクリアする（構造は保持）."""
        self._clear_triplets()
        self._mat = sp.csr_matrix((self.size, self.size), dtype=float)
        self._values[:] = 0.0

    def copy(self) -> SparseMatrixCache:
        """数値を含む完全なコピー（構造配列は共有）."""
        out = SparseMatrixCache(self.size)
        out._mapping = self._mapping
        out._indptr = self._indptr
        out._indices = self._indices
        out._keys = self._keys
        out._values = self._values.copy()
        out._rows = list(self._rows)
        out._cols = list(self._cols)
        out._vals = list(self._vals)
        out._mat = self._mat.copy()
        return out

    def _clear_triplets(self) -> None:
        self._rows = []
        self._cols = []
        self._vals = []

    # ------------------------------------------------------------------
    # 状態
    # ------------------------------------------------------------------

    @property
    def has_mapping(self) -> bool:
        """ウォーム状態（写像計算済み）か."""
        return self._mapping is not None

    @property
    def nnz(self) -> int:
        """構造的非ゼロ数（ウォーム時）または作業行列の非ゼロ数（コールド時）."""
        if self._mapping is not None:
            return int(self._values.size)
        return int(self._mat.nnz)

    # ------------------------------------------------------------------
    # 値の加算
    # ------------------------------------------------------------------

    def add_value(self, i: int, j: int, value: float) -> None:
        """(i, j) 成分に value を加算する."""
        if self._mapping is None:
            self._rows.append(np.array([i], dtype=np.int64))
            self._cols.append(np.array([j], dtype=np.int64))
            self._vals.append(np.array([value], dtype=float))
            return

        for col, slot in self._mapping[i]:
            if col == j:
                self._values[slot] += value
                return
        raise ValueError(f"({i}, {j}) はキャッシュ済みの非ゼロパターンに含まれていません。")

    def add_values(self, rows: np.ndarray, cols: np.ndarray, values: np.ndarray) -> None:
        """add_value のベクトル化版.

        ウォーム時は行優先キー row * size + col を整列済みキー配列から
        二分探索して slot を求め、np.add.at で重複ごと加算する。
        """
        rows = np.asarray(rows, dtype=np.int64).ravel()
        cols = np.asarray(cols, dtype=np.int64).ravel()
        values = np.asarray(values, dtype=float).ravel()
        if not (rows.size == cols.size == values.size):
            raise ValueError("rows, cols, values の長さが一致していません。")

        if self._mapping is None:
            self._rows.append(rows.copy())
            self._cols.append(cols.copy())
            self._vals.append(values.copy())
            return

        assert self._keys is not None
        if rows.size == 0:
            return
        if self._keys.size == 0:
            raise ValueError("非ゼロパターンが空のキャッシュには加算できません。")
        keys = rows * self.size + cols
        slots = np.searchsorted(self._keys, keys)
        slots_clipped = np.minimum(slots, self._keys.size - 1)
        found = (slots < self._keys.size) & (self._keys[slots_clipped] == keys)
        if not np.all(found):
            k = int(np.flatnonzero(~found)[0])
            raise ValueError(
                f"({rows[k]}, {cols[k]}) はキャッシュ済みの非ゼロパターンに含まれていません。"
            )
        np.add.at(self._values, slots, values)

    # ------------------------------------------------------------------
    # 圧縮・取り出し
    # ------------------------------------------------------------------

    def prune(self) -> None:
        """蓄積トリプレットを作業行列へ圧縮してクリアする（コールド時のみ）."""
        if self._mapping is not None or not self._rows:
            return

        coo = self._mat.tocoo()
        self._mat = _csr_from_triplets(
            np.concatenate([coo.row, *self._rows]),
            np.concatenate([coo.col, *self._cols]),
            np.concatenate([coo.data, *self._vals]),
            self.size,
        )
        self._clear_triplets()

    def get_matrix(self, compute_mapping: bool = False) -> sp.csr_matrix:
        """現在の行列を CSR で返す.

        Args:
            compute_mapping: コールド時に写像を計算してウォーム状態へ移行するか

        Returns:
            (size, size) CSR 行列
        """
        self.prune()

        if self._mapping is None:
            if compute_mapping:
                self._build_mapping()
                logger.debug("Cache computed (size=%d, nnz=%d)", self.size, self._values.size)
            out = self._mat.copy()
        else:
            out = self._materialize()
            logger.debug("Using cache (size=%d, nnz=%d)", self.size, self._values.size)

        self._values[:] = 0.0
        return out

    def _build_mapping(self) -> None:
        mat = self._mat
        mat.sort_indices()
        self._indptr = mat.indptr.astype(np.int64, copy=True)
        self._indices = mat.indices.astype(np.int64, copy=True)
        self._indptr.setflags(write=False)
        self._indices.setflags(write=False)
        self._values = np.zeros(self._indices.size, dtype=float)

        row_of_slot = np.repeat(np.arange(self.size, dtype=np.int64), np.diff(self._indptr))
        self._keys = row_of_slot * self.size + self._indices
        self._keys.setflags(write=False)

        mapping: list[list[tuple[int, int]]] = [[] for _ in range(self.size)]
        for i in range(self.size):
            for slot in range(self._indptr[i], self._indptr[i + 1]):
                mapping[i].append((int(self._indices[slot]), slot))
        self._mapping = mapping

    def _materialize(self) -> sp.csr_matrix:
        """値バッファと保存済み構造から CSR を組み立てる（値はリセットしない）."""
        assert self._indptr is not None and self._indices is not None
        return sp.csr_matrix(
            (self._values.copy(), self._indices.copy(), self._indptr.copy()),
            shape=(self.size, self.size),
        )

    def _current_matrix(self) -> sp.csr_matrix:
        if self._mapping is None:
            self.prune()
            return self._mat
        return self._materialize()

    # ------------------------------------------------------------------
    # 合算
    # ------------------------------------------------------------------

    def _check_same_structure(self, other: SparseMatrixCache) -> None:
        if self.size != other.size:
            raise ValueError(f"サイズ不一致: {self.size} != {other.size}")
        if self._indptr is other._indptr and self._indices is other._indices:
            return
        if (
            self._values.size != other._values.size
            or not np.array_equal(self._indptr, other._indptr)
            or not np.array_equal(self._indices, other._indices)
        ):
            raise ValueError("非ゼロパターンの異なるキャッシュは合算できません。")

    def __iadd__(self, other: SparseMatrixCache) -> SparseMatrixCache:
        if self._mapping is not None and other._mapping is not None:
            self._check_same_structure(other)
            self._values += other._values
            return self

        if self.size != other.size:
            raise ValueError(f"サイズ不一致: {self.size} != {other.size}")

        other_mat = other._current_matrix()
        if self._mapping is not None:
            coo = other_mat.tocoo()
            self.add_values(coo.row, coo.col, coo.data)
        else:
            self.prune()
            self._mat = _merge_csr(self._mat, other_mat)
        return self

    def __add__(self, other: SparseMatrixCache) -> SparseMatrixCache:
        out = self.copy()
        out += other
        return out

