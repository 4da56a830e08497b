"""非線形問題の設定データクラス."""

from __future__ import annotations

from dataclasses import dataclass

# バリア接触の既定値
DEFAULT_BARRIER_STIFFNESS = 1.0e8
DEFAULT_DHAT_SQUARED = 1.0e-6


@dataclass
class ProblemConfig:
    """NLProblem の設定.

    接触の有効/無効はプロセス全体のスイッチではなく、構築時にこの設定で決まる。
    接触項が評価されるのは contact_enabled と SimulationContext.has_collision が
    ともに True のときのみ。

    Attributes:
        contact_enabled: バリア接触項の全体スイッチ
        barrier_stiffness: バリアエネルギーの重み κ
        dhat_squared: バリアの作用距離の二乗 d̂²
    """

    contact_enabled: bool = False
    barrier_stiffness: float = DEFAULT_BARRIER_STIFFNESS
    dhat_squared: float = DEFAULT_DHAT_SQUARED

    def __post_init__(self) -> None:
        if self.barrier_stiffness <= 0:
            raise ValueError(f"barrier_stiffness は正値: {self.barrier_stiffness}")
        if self.dhat_squared <= 0:
            raise ValueError(f"dhat_squared は正値: {self.dhat_squared}")
