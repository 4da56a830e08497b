from __future__ import annotations

from dataclasses import dataclass

import numpy as np


def lame_parameters(E: float, nu: float) -> tuple[float, float]:
    """ヤング率・ポアソン比から Lamé 定数 (λ, μ) を返す."""
    lam = E * nu / ((1.0 + nu) * (1.0 - 2.0 * nu))
    mu = E / (2.0 * (1.0 + nu))
    return lam, mu


def constitutive_plane_strain(E: float, nu: float) -> np.ndarray:
    """平面歪みの弾性マトリクス D を返す。

    Voigt 表記: σ = [σxx, σyy, τxy], ε = [εxx, εyy, γxy]

    Args:
        E: ヤング率
        nu: ポアソン比

    Returns:
        D: (3,3) 弾性マトリクス
    """
    lam, mu = lame_parameters(E, nu)
    return np.array(
        [[lam + 2.0 * mu, lam, 0.0], [lam, lam + 2.0 * mu, 0.0], [0.0, 0.0, mu]],
        dtype=float,
    )


def constitutive_3d(E: float, nu: float) -> np.ndarray:
    """3D 等方弾性テンソル D (6×6) を返す.

    Voigt 表記: σ = [σxx, σyy, σzz, τyz, τxz, τxy]
                ε = [εxx, εyy, εzz, γyz, γxz, γxy]

    Args:
        E: ヤング率
        nu: ポアソン比

    Returns:
        D: (6, 6) 弾性テンソル
    """
    lam, mu = lame_parameters(E, nu)
    D = np.zeros((6, 6), dtype=float)
    # 法線成分
    D[0, 0] = D[1, 1] = D[2, 2] = lam + 2.0 * mu
    D[0, 1] = D[0, 2] = D[1, 0] = D[1, 2] = D[2, 0] = D[2, 1] = lam
    # せん断成分
    D[3, 3] = D[4, 4] = D[5, 5] = mu
    return D


@dataclass
class ElasticMaterial:
    """等方弾性材料（2D は平面ひずみ）.

    Attributes:
        E: ヤング率
        nu: ポアソン比
        density: 密度（質量行列・物体力用）
    """

    E: float
    nu: float
    density: float = 1.0

    def __post_init__(self) -> None:
        if self.E <= 0:
            raise ValueError(f"ヤング率 E は正値: {self.E}")
        if not (-1.0 < self.nu < 0.5):
            raise ValueError(f"ポアソン比は (-1, 0.5) の範囲: {self.nu}")
        if self.density <= 0:
            raise ValueError(f"密度は正値: {self.density}")

    @property
    def lame(self) -> tuple[float, float]:
        """Lamé 定数 (λ, μ)."""
        return lame_parameters(self.E, self.nu)

    def tangent(self, dim: int) -> np.ndarray:
        """Voigt 表記の弾性マトリクス D を返す（dim=2: 平面ひずみ, dim=3: 3D）."""
        if dim == 2:
            return constitutive_plane_strain(self.E, self.nu)
        if dim == 3:
            return constitutive_3d(self.E, self.nu)
        raise ValueError(f"未対応の次元: {dim}")
