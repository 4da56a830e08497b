"""メソッド戻り値の型定義.

公開関数が返す複合データを NamedTuple で定義する。
"""

from __future__ import annotations

from typing import NamedTuple


class MatrixStats(NamedTuple):
    """密行列の診断情報.

    Attributes:
        determinant: 行列式
        sigma_max: 最大特異値
        sigma_min: 最小特異値
        condition: 条件数 sigma_max / sigma_min（sigma_min = 0 なら inf）
        invertible: 数値的に正則か（フルランク）
    """

    determinant: float
    sigma_max: float
    sigma_min: float
    condition: float
    invertible: bool
