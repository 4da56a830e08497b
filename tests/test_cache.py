"""CachedValue（世代付き遅延計算キャッシュ）のテスト."""

from __future__ import annotations

from nlfem.core.cache import CachedValue


class _Counter:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.calls * 10


class TestCachedValue:
    """計算・再利用・無効化."""

    def test_initially_invalid(self):
        slot: CachedValue[int] = CachedValue()
        assert not slot.valid
        assert slot.generation == 0

    def test_computed_once(self):
        slot: CachedValue[int] = CachedValue()
        compute = _Counter()
        assert slot.get(compute) == 10
        assert slot.get(compute) == 10
        assert compute.calls == 1
        assert slot.valid

    def test_invalidate_recomputes(self):
        slot: CachedValue[int] = CachedValue()
        compute = _Counter()
        slot.get(compute)
        slot.invalidate()
        assert not slot.valid
        assert slot.generation == 1
        assert slot.get(compute) == 20
        assert compute.calls == 2

    def test_repeated_invalidate_advances_generation(self):
        slot: CachedValue[int] = CachedValue()
        for _ in range(3):
            slot.invalidate()
        assert slot.generation == 3
        assert slot.get(lambda: 5) == 5
