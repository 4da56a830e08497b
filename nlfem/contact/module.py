"""バリア接触モジュール（ContactModuleProtocol の参照実装）."""

from __future__ import annotations

import logging

import numpy as np
import scipy.sparse as sp

from nlfem.contact.ccd import is_step_collision_free
from nlfem.contact.constraints import CandidateSet, construct_constraint_set
from nlfem.contact.potential import (
    compute_barrier_potential,
    compute_barrier_potential_gradient,
    compute_barrier_potential_hessian,
)

logger = logging.getLogger(__name__)


class BarrierContactModule:
    """対数バリアによる接触ポテンシャルと連続衝突判定.

    Args:
        project_hessian_to_psd: 局所ヘッセ行列を半正定値に射影するか
        ccd_tolerance: 連続衝突判定で接触とみなす相対距離
    """

    def __init__(
        self,
        *,
        project_hessian_to_psd: bool = False,
        ccd_tolerance: float = 1e-8,
    ) -> None:
        if ccd_tolerance <= 0:
            raise ValueError(f"ccd_tolerance は正値: {ccd_tolerance}")
        self.project_hessian_to_psd = project_hessian_to_psd
        self.ccd_tolerance = ccd_tolerance

    def construct_constraint_set(
        self,
        positions: np.ndarray,
        edges: np.ndarray,
        faces: np.ndarray,
        dhat_squared: float,
    ) -> CandidateSet:
        return construct_constraint_set(positions, edges, faces, dhat_squared)

    def compute_barrier_potential(
        self,
        rest_positions: np.ndarray,
        positions: np.ndarray,
        edges: np.ndarray,
        faces: np.ndarray,
        candidates: CandidateSet,
        dhat_squared: float,
    ) -> float:
        energy = compute_barrier_potential(
            rest_positions, positions, edges, faces, candidates, dhat_squared
        )
        logger.debug("Barrier potential: %.6e (%d candidates)", energy, len(candidates))
        return energy

    def compute_barrier_potential_gradient(
        self,
        rest_positions: np.ndarray,
        positions: np.ndarray,
        edges: np.ndarray,
        faces: np.ndarray,
        candidates: CandidateSet,
        dhat_squared: float,
    ) -> np.ndarray:
        return compute_barrier_potential_gradient(
            rest_positions, positions, edges, faces, candidates, dhat_squared
        )

    def compute_barrier_potential_hessian(
        self,
        rest_positions: np.ndarray,
        positions: np.ndarray,
        edges: np.ndarray,
        faces: np.ndarray,
        candidates: CandidateSet,
        dhat_squared: float,
    ) -> sp.csr_matrix:
        return compute_barrier_potential_hessian(
            rest_positions,
            positions,
            edges,
            faces,
            candidates,
            dhat_squared,
            project_hessian_to_psd=self.project_hessian_to_psd,
        )

    def is_step_collision_free(
        self,
        positions0: np.ndarray,
        positions1: np.ndarray,
        edges: np.ndarray,
        faces: np.ndarray,
    ) -> bool:
        return is_step_collision_free(
            positions0, positions1, edges, faces, tolerance=self.ccd_tolerance
        )
