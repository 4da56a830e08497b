"""行列の診断ユーティリティ."""

from __future__ import annotations

import logging

import numpy as np
import scipy.sparse as sp

from nlfem.core.results import MatrixStats

logger = logging.getLogger(__name__)


def matrix_stats(M: np.ndarray | sp.spmatrix) -> MatrixStats:
    """行列式・特異値の最大/最小・条件数・正則性を計算してログに出す.

    疎行列は密行列に変換して計算するため、小規模な行列の診断用。

    Args:
        M: 正方行列

    Returns:
        MatrixStats
    """
    A = M.toarray() if sp.issparse(M) else np.asarray(M, dtype=float)
    if A.ndim != 2 or A.shape[0] != A.shape[1]:
        raise ValueError(f"正方行列が必要です: {A.shape}")

    sigma = np.linalg.svd(A, compute_uv=False)
    s_max = float(sigma[0]) if sigma.size else 0.0
    s_min = float(sigma[-1]) if sigma.size else 0.0
    cond = s_max / s_min if s_min > 0.0 else np.inf
    invertible = bool(A.shape[0] == 0 or np.linalg.matrix_rank(A) == A.shape[0])
    stats = MatrixStats(
        determinant=float(np.linalg.det(A)),
        sigma_max=s_max,
        sigma_min=s_min,
        condition=float(cond),
        invertible=invertible,
    )

    logger.debug("----------------------------------------")
    logger.debug("-- Determinant: %g", stats.determinant)
    logger.debug("-- Singular values: %g %g", stats.sigma_max, stats.sigma_min)
    logger.debug("-- Cond: %g", stats.condition)
    logger.debug("-- Invertible: %s", stats.invertible)
    logger.debug("----------------------------------------")
    return stats
