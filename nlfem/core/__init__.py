"""nlfem.core - 協調オブジェクトの抽象インタフェース・設定・戻り値型.

Protocol 階層:
  FormulationProtocol:     弾性エネルギー / 勾配 / ヘッセ行列
  LoadProviderProtocol:    外力ベクトル・Dirichlet 規定値
  ContactModuleProtocol:   バリア接触・連続衝突判定
"""

from nlfem.core.cache import CachedValue
from nlfem.core.config import DEFAULT_BARRIER_STIFFNESS, DEFAULT_DHAT_SQUARED, ProblemConfig
from nlfem.core.protocols import (
    ContactModuleProtocol,
    FormulationProtocol,
    LoadProviderProtocol,
)
from nlfem.core.results import MatrixStats

__all__ = [
    "CachedValue",
    "ContactModuleProtocol",
    "DEFAULT_BARRIER_STIFFNESS",
    "DEFAULT_DHAT_SQUARED",
    "FormulationProtocol",
    "LoadProviderProtocol",
    "MatrixStats",
    "ProblemConfig",
]
