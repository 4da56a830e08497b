"""バリア接触モジュール.

モジュール構成:
- broadphase: AABB格子による候補ペア探索（swept AABB を含む）
- distance: 接触ステンシルの二乗距離・勾配・ヘッセ行列、最近接特徴の判定
- barrier: 対数バリア関数とその微分
- constraints: 接触候補集合の構築
- potential: バリアポテンシャルの総和・勾配・ヘッセ行列
- ccd: 連続衝突判定
- module: ContactModuleProtocol の実装 BarrierContactModule
"""

from nlfem.contact.barrier import barrier, barrier_gradient, barrier_hessian
from nlfem.contact.broadphase import broadphase_aabb, compute_aabbs, compute_swept_aabbs
from nlfem.contact.ccd import is_step_collision_free, primitives_collide
from nlfem.contact.constraints import (
    CandidateSet,
    ContactCandidate,
    construct_constraint_set,
)
from nlfem.contact.distance import (
    CandidateKind,
    ClosestFeature,
    closest_feature,
    stencil_distance,
    stencil_distance_gradient,
    stencil_distance_hessian,
)
from nlfem.contact.module import BarrierContactModule
from nlfem.contact.potential import (
    compute_barrier_potential,
    compute_barrier_potential_gradient,
    compute_barrier_potential_hessian,
)

__all__ = [
    "BarrierContactModule",
    "CandidateKind",
    "CandidateSet",
    "ClosestFeature",
    "ContactCandidate",
    "barrier",
    "barrier_gradient",
    "barrier_hessian",
    "broadphase_aabb",
    "closest_feature",
    "compute_aabbs",
    "compute_barrier_potential",
    "compute_barrier_potential_gradient",
    "compute_barrier_potential_hessian",
    "compute_swept_aabbs",
    "construct_constraint_set",
    "is_step_collision_free",
    "primitives_collide",
    "stencil_distance",
    "stencil_distance_gradient",
    "stencil_distance_hessian",
]
