"""対数バリア関数（二乗距離版）.

    b(s) = −(s − ŝ)² ln(s / ŝ)   (0 < s < ŝ)
         = 0                      (s ≥ ŝ)
         = +∞                     (s ≤ 0)

s = d²（二乗距離）、ŝ = d̂²。s → ŝ で値・1 階・2 階微分が連続に 0 へ近づき、
s → 0 で発散する。引数はスカラーでも配列でもよい。
"""

from __future__ import annotations

import numpy as np


def barrier(s: float | np.ndarray, s_hat: float) -> float | np.ndarray:
    """バリア値 b(s)."""
    s = np.asarray(s, dtype=float)
    active = (s > 0.0) & (s < s_hat)
    safe = np.where(active, s, s_hat)
    out = np.where(active, -((safe - s_hat) ** 2) * np.log(safe / s_hat), 0.0)
    out = np.where(s <= 0.0, np.inf, out)
    return out[()] if out.ndim == 0 else out


def barrier_gradient(s: float | np.ndarray, s_hat: float) -> float | np.ndarray:
    """db/ds = −2(s − ŝ) ln(s/ŝ) − (s − ŝ)²/s."""
    s = np.asarray(s, dtype=float)
    active = (s > 0.0) & (s < s_hat)
    safe = np.where(active, s, s_hat)
    diff = safe - s_hat
    out = np.where(active, -2.0 * diff * np.log(safe / s_hat) - diff**2 / safe, 0.0)
    out = np.where(s <= 0.0, -np.inf, out)
    return out[()] if out.ndim == 0 else out


def barrier_hessian(s: float | np.ndarray, s_hat: float) -> float | np.ndarray:
    """d²b/ds² = −2 ln(s/ŝ) − 4(s − ŝ)/s + (s − ŝ)²/s²."""
    s = np.asarray(s, dtype=float)
    active = (s > 0.0) & (s < s_hat)
    safe = np.where(active, s, s_hat)
    diff = safe - s_hat
    out = np.where(
        active,
        -2.0 * np.log(safe / s_hat) - 4.0 * diff / safe + diff**2 / safe**2,
        0.0,
    )
    out = np.where(s <= 0.0, np.inf, out)
    return out[()] if out.ndim == 0 else out
