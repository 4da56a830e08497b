"""無効化世代付きの遅延計算キャッシュ.

右辺ベクトルや線形剛性行列のように「一度計算したら明示的に無効化されるまで
再利用する」値を保持する。有効フラグをフィールドに散在させる代わりに、
世代カウンタで無効化の履歴を追跡できるようにする。
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class CachedValue(Generic[T]):
    """世代カウンタ付きの Optional スロット.

    Attributes:
        generation: 無効化のたびに 1 増える世代番号
    """

    def __init__(self) -> None:
        self._value: T | None = None
        self._computed_generation = -1
        self.generation = 0

    @property
    def valid(self) -> bool:
        """現世代で計算済みの値を保持しているか."""
        return self._value is not None and self._computed_generation == self.generation

    def get(self, compute: Callable[[], T]) -> T:
        """有効な値を返す。無効なら compute() で再計算して保持する."""
        if not self.valid:
            self._value = compute()
            self._computed_generation = self.generation
        return self._value  # type: ignore[return-value]

    def invalidate(self) -> None:
        """保持値を破棄して世代を進める."""
        self._value = None
        self.generation += 1
