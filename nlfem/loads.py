"""荷重・Dirichlet 境界条件（LoadProviderProtocol の参照実装）.

外力ベクトル f(t) は次の寄与の和:
  - 物体力（単位質量あたり）: f_a = ρ ∫ N_a g dV（要素重心の 1 点積分）
  - Neumann 表面力: f_a = ∫ N_a t dS
      2D 線分: Gauss-Legendre n_boundary_samples 点
      3D 三角形: n_boundary_samples <= 1 なら重心 1 点、それ以外は 3 点則

外力ポテンシャルは compute_energy(x, t) = −f(t)·x。
Dirichlet 規定値は set_bc で全体ベクトルの拘束 DOF 行へ上書きする。
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from math import factorial

import numpy as np

from nlfem.elements.simplex import simplex_shape_gradients

# 時刻と座標 (n, dim) から値を返す関数
FieldFunction = Callable[[float, np.ndarray], np.ndarray]

# 三角形の 3 点則（重心座標, 重みは面積比）
_TRI_POINTS_3 = np.array(
    [
        [2.0 / 3.0, 1.0 / 6.0, 1.0 / 6.0],
        [1.0 / 6.0, 2.0 / 3.0, 1.0 / 6.0],
        [1.0 / 6.0, 1.0 / 6.0, 2.0 / 3.0],
    ]
)
_TRI_WEIGHTS_3 = np.full(3, 1.0 / 3.0)


def _evaluate_field(
    value: float | np.ndarray | FieldFunction,
    t: float,
    X: np.ndarray,
    ncomp: int,
) -> np.ndarray:
    """定数・配列・関数のいずれかを (n, ncomp) に評価する."""
    v = value(t, X) if callable(value) else value
    return np.broadcast_to(np.asarray(v, dtype=float), (X.shape[0], ncomp))


def facet_measure(nodes: np.ndarray, facets: np.ndarray) -> np.ndarray:
    """境界ファセットの測度（2D: 長さ, 3D: 面積）."""
    X = np.asarray(nodes, dtype=float)[np.asarray(facets, dtype=np.int64)]
    n = X.shape[1] - 1
    if n == 1:
        return np.linalg.norm(X[:, 1] - X[:, 0], axis=1)
    T = X[:, 1:] - X[:, :1]
    gram = np.einsum("fai,fbi->fab", T, T)
    return np.sqrt(np.abs(np.linalg.det(gram))) / factorial(n)


# ========== 境界条件 ==========


@dataclass
class DirichletBC:
    """Dirichlet（規定変位）境界条件.

    Attributes:
        nodes: 拘束節点インデックス
        components: 拘束する変位成分（None なら全成分）
        value: 規定値。スカラー、(ncomp,) / (n, ncomp) 配列、
            または value(t, X) -> (n, ncomp) の関数（X は節点の参照座標）
    """

    nodes: np.ndarray
    components: Sequence[int] | None = None
    value: float | np.ndarray | FieldFunction = 0.0

    def __post_init__(self) -> None:
        self.nodes = np.unique(np.asarray(self.nodes, dtype=np.int64).ravel())
        if self.nodes.size and self.nodes[0] < 0:
            raise ValueError(f"節点インデックスは非負: {self.nodes[0]}")
        if self.components is not None:
            self.components = tuple(int(c) for c in self.components)
            if len(set(self.components)) != len(self.components):
                raise ValueError(f"components が重複しています: {self.components}")

    def component_list(self, dim: int) -> list[int]:
        comps = list(range(dim)) if self.components is None else list(self.components)
        for c in comps:
            if not 0 <= c < dim:
                raise ValueError(f"成分 {c} は次元 {dim} の範囲外です。")
        return comps

    def dofs(self, dim: int) -> np.ndarray:
        """拘束 DOF (n, ncomp)（節点優先インターリーブ）."""
        comps = np.asarray(self.component_list(dim), dtype=np.int64)
        return self.nodes[:, None] * dim + comps[None, :]

    def evaluate(self, t: float, coords: np.ndarray) -> np.ndarray:
        """時刻 t の規定値 (n, ncomp)."""
        ncomp = len(self.component_list(coords.shape[1]))
        return _evaluate_field(self.value, t, coords[self.nodes], ncomp)


@dataclass
class NeumannBC:
    """Neumann（表面力）境界条件.

    Attributes:
        facets: 境界ファセット。2D は線分 (n, 2)、3D は三角形 (n, 3)
        traction: 表面力。(dim,) 定数または traction(t, X) -> (n_q, dim)
    """

    facets: np.ndarray
    traction: np.ndarray | FieldFunction

    def __post_init__(self) -> None:
        self.facets = np.asarray(self.facets, dtype=np.int64)
        if self.facets.ndim != 2 or self.facets.shape[1] not in (2, 3):
            raise ValueError(f"facets は (n, 2) または (n, 3): {self.facets.shape}")
        if not callable(self.traction):
            self.traction = np.asarray(self.traction, dtype=float)


# ========== RHS アセンブラ ==========


class RhsAssembler:
    """外力ベクトルと Dirichlet 規定値の提供者.

    Args:
        nodes: (N, dim) 参照配置の節点座標
        elements: (n_e, dim + 1) 接続配列
        body_force: 単位質量あたりの物体力。(dim,) 定数または body_force(t, X)
        density: 密度
        dirichlet: Dirichlet 境界条件の列（後のものが優先）
        neumann: Neumann 境界条件の列
        n_boundary_samples: 境界積分の積分点数
        thickness: 厚み（2D のみ）

    Attributes:
        boundary_nodes: 拘束 DOF（昇順・一意）
        ndof: 変位 DOF 数
    """

    def __init__(
        self,
        nodes: np.ndarray,
        elements: np.ndarray,
        *,
        body_force: np.ndarray | FieldFunction | None = None,
        density: float = 1.0,
        dirichlet: Sequence[DirichletBC] = (),
        neumann: Sequence[NeumannBC] = (),
        n_boundary_samples: int = 2,
        thickness: float = 1.0,
    ) -> None:
        self.nodes = np.asarray(nodes, dtype=float)
        self.elements = np.asarray(elements, dtype=np.int64)
        self.dim = int(self.nodes.shape[1])
        self.ndof = self.nodes.shape[0] * self.dim
        if n_boundary_samples < 1:
            raise ValueError(f"n_boundary_samples は 1 以上: {n_boundary_samples}")
        if density <= 0:
            raise ValueError(f"密度は正値: {density}")

        self.body_force = body_force
        self.density = float(density)
        self.dirichlet = list(dirichlet)
        self.neumann = list(neumann)
        self.n_boundary_samples = int(n_boundary_samples)
        self.thickness = float(thickness) if self.dim == 2 else 1.0

        for bc in self.dirichlet:
            if bc.nodes.size and bc.nodes[-1] >= self.nodes.shape[0]:
                raise ValueError(f"Dirichlet 節点 {bc.nodes[-1]} が節点数の範囲外です。")
        for bc in self.neumann:
            if bc.facets.shape[1] != self.dim:
                raise ValueError(
                    f"{self.dim}D の Neumann ファセットは {self.dim} 節点: {bc.facets.shape[1]}"
                )

        dofs = [bc.dofs(self.dim).ravel() for bc in self.dirichlet]
        self.boundary_nodes = np.unique(np.concatenate(dofs)) if dofs else np.zeros(0, np.int64)
        self.boundary_nodes.setflags(write=False)

        if self.body_force is not None:
            _, measure = simplex_shape_gradients(self.nodes, self.elements)
            self._volumes = measure * self.thickness
            self._centroids = self.nodes[self.elements].mean(axis=1)

    # ------------------------------------------------------------------
    # LoadProviderProtocol
    # ------------------------------------------------------------------

    def compute_energy_grad(self, t: float) -> np.ndarray:
        """時刻 t の外力ベクトル f(t) (ndof,)."""
        f = np.zeros((self.nodes.shape[0], self.dim), dtype=float)
        if self.body_force is not None:
            self._add_body_force(f, t)
        for bc in self.neumann:
            if self.dim == 2:
                self._add_segment_traction(f, bc, t)
            else:
                self._add_triangle_traction(f, bc, t)
        return f.ravel()

    def compute_energy(self, x: np.ndarray, t: float) -> float:
        """外力ポテンシャル −f(t)·x."""
        x = np.asarray(x, dtype=float)
        if x.shape[0] < self.ndof:
            raise ValueError(f"変位ベクトル長 {x.shape[0]} < ndof {self.ndof}")
        return -float(self.compute_energy_grad(t) @ x[: self.ndof])

    def set_bc(self, vec: np.ndarray, t: float) -> None:
        """vec の拘束 DOF 行を時刻 t の規定値で上書きする."""
        if vec.shape[0] < self.ndof:
            raise ValueError(f"ベクトル長 {vec.shape[0]} < ndof {self.ndof}")
        for bc in self.dirichlet:
            vec[bc.dofs(self.dim)] = bc.evaluate(t, self.nodes)

    # ------------------------------------------------------------------
    # 積分
    # ------------------------------------------------------------------

    def _add_body_force(self, f: np.ndarray, t: float) -> None:
        k = self.dim + 1
        g = _evaluate_field(self.body_force, t, self._centroids, self.dim)
        fe = (self.density * self._volumes / k)[:, None] * g  # (n_e, dim)
        for a in range(k):
            np.add.at(f, self.elements[:, a], fe)

    def _add_segment_traction(self, f: np.ndarray, bc: NeumannBC, t: float) -> None:
        xi, w = np.polynomial.legendre.leggauss(self.n_boundary_samples)
        s = 0.5 * (xi + 1.0)
        w = 0.5 * w
        X0 = self.nodes[bc.facets[:, 0]]
        X1 = self.nodes[bc.facets[:, 1]]
        length = facet_measure(self.nodes, bc.facets) * self.thickness
        N = np.stack([1.0 - s, s], axis=1)  # (n_q, 2)
        for q in range(s.size):
            Xq = N[q, 0] * X0 + N[q, 1] * X1
            tq = _evaluate_field(bc.traction, t, Xq, self.dim)
            for a in range(2):
                np.add.at(f, bc.facets[:, a], (w[q] * N[q, a] * length)[:, None] * tq)

    def _add_triangle_traction(self, f: np.ndarray, bc: NeumannBC, t: float) -> None:
        if self.n_boundary_samples <= 1:
            bary = np.full((1, 3), 1.0 / 3.0)
            w = np.ones(1)
        else:
            bary, w = _TRI_POINTS_3, _TRI_WEIGHTS_3
        X = self.nodes[bc.facets]  # (n_f, 3, 3)
        area = facet_measure(self.nodes, bc.facets)
        for q in range(len(w)):
            Xq = np.einsum("a,fai->fi", bary[q], X)
            tq = _evaluate_field(bc.traction, t, Xq, self.dim)
            for a in range(3):
                np.add.at(f, bc.facets[:, a], (w[q] * bary[q, a] * area)[:, None] * tq)

