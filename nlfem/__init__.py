"""nlfem - 有限要素時間積分の非線形目的関数コア.

外部の Newton 系オプティマイザに value / gradient / hessian / is_step_valid を
提供する NLProblem と、それを支える DOF 縮約層・疎行列アセンブリキャッシュ。

モジュール構成:
- reduction: 全体 ⇔ 縮約 DOF ベクトルの変換、点群との並べ替え
- sparse_cache: パターン再利用型の疎行列アセンブラ
- problem: NLProblem（目的関数）
- context: SimulationContext（定式化・荷重・質量・境界形状）
- assembly: 線形弾性 / St.Venant-Kirchhoff 定式化、質量行列
- loads: 物体力・Neumann・Dirichlet 境界条件
- contact: バリア接触（候補集合・ポテンシャル・CCD）
- mesh: 境界ファセット抽出
- matrix_utils / logging_config: 診断
"""

import logging

from nlfem.assembly import (
    LinearElasticity,
    SaintVenantKirchhoff,
    assemble_mass_matrix,
    create_formulation,
)
from nlfem.contact import BarrierContactModule
from nlfem.context import SimulationContext
from nlfem.core import ProblemConfig
from nlfem.loads import DirichletBC, NeumannBC, RhsAssembler
from nlfem.logging_config import setup_logging
from nlfem.materials.elastic import ElasticMaterial
from nlfem.matrix_utils import matrix_stats
from nlfem.problem import NLProblem
from nlfem.reduction import DofReduction
from nlfem.sparse_cache import SparseMatrixCache

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "BarrierContactModule",
    "DirichletBC",
    "DofReduction",
    "ElasticMaterial",
    "LinearElasticity",
    "NLProblem",
    "NeumannBC",
    "ProblemConfig",
    "RhsAssembler",
    "SaintVenantKirchhoff",
    "SimulationContext",
    "SparseMatrixCache",
    "assemble_mass_matrix",
    "create_formulation",
    "matrix_stats",
    "setup_logging",
]
