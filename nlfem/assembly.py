"""一次単体要素の弾性定式化と全体行列アセンブリ.

FormulationProtocol の参照実装:
  - LinearElasticity:       微小ひずみ線形弾性（ヘッセ行列は反復点に依存しない）
  - SaintVenantKirchhoff:   Total Lagrangian の St.Venant-Kirchhoff 超弾性

要素量は全要素分を einsum で一括計算し、ヘッセ行列は SparseMatrixCache で
組み立てる。初回はコールド（トリプレット → CSR + 写像計算）、2 回目以降は
ウォーム（値バッファへの直接加算）となる。

n_jobs >= 2 かつ要素数が閾値以上のとき、ウォーム状態のヘッセ行列アセンブリを
要素チャンクごとのワーカーへ分配する（fan-out）。各ワーカーは
SparseMatrixCache.like(blueprint) で構造を共有した専用キャッシュに加算し、
join 後に += で合算する（fan-in）。
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import scipy.sparse as sp

from nlfem.elements.simplex import (
    coo_indices,
    displacement_gradients,
    element_dofs,
    simplex_shape_gradients,
    strain_displacement_matrices,
)
from nlfem.materials.elastic import ElasticMaterial
from nlfem.sparse_cache import SparseMatrixCache

logger = logging.getLogger(__name__)

# 並列化の最小要素数閾値（これ未満は逐次実行）
_PARALLEL_MIN_ELEMENTS = 4096


def _resolve_n_jobs(n_jobs: int) -> int:
    if n_jobs == -1:
        n_jobs = os.cpu_count() or 1
    return max(int(n_jobs), 1)


def _element_measures(measure: np.ndarray, dim: int, thickness: float) -> np.ndarray:
    """要素体積。2D（平面ひずみ）は面積 × 厚み."""
    return measure * thickness if dim == 2 else measure


# ========== 定式化の基底クラス ==========


class SimplexFormulation:
    """P1 単体メッシュ上の弾性定式化の共通処理.

    サブクラスは要素ごとのエネルギー・内力・要素ヘッセ行列を実装する。

    Args:
        nodes: (N, dim) 参照配置の節点座標
        elements: (n_e, dim + 1) 接続配列
        material: 弾性材料
        thickness: 厚み（2D のみ使用）
        n_jobs: ヘッセ行列アセンブリの並列ワーカー数。1=逐次、-1=全CPUコア

    Attributes:
        dim: 空間次元
        n_bases: 節点数
        ndof: 変位 DOF 数 (= n_bases * dim)
    """

    name = "Simplex"
    is_linear = False
    is_mixed = False

    def __init__(
        self,
        nodes: np.ndarray,
        elements: np.ndarray,
        material: ElasticMaterial,
        *,
        thickness: float = 1.0,
        n_jobs: int = 1,
    ) -> None:
        self.nodes = np.asarray(nodes, dtype=float)
        self.elements = np.asarray(elements, dtype=np.int64)
        self.dim = int(self.nodes.shape[1])
        if self.dim not in (2, 3):
            raise ValueError(f"未対応の次元: {self.dim}")
        if thickness <= 0:
            raise ValueError(f"厚みは正値: {thickness}")
        self.n_bases = int(self.nodes.shape[0])
        self.ndof = self.n_bases * self.dim
        self.material = material
        self.n_jobs = _resolve_n_jobs(n_jobs)

        self.dN, measure = simplex_shape_gradients(self.nodes, self.elements)
        self.volumes = _element_measures(measure, self.dim, thickness)
        self.edofs = element_dofs(self.elements, self.dim)
        m = self.edofs.shape[1]
        rows, cols = coo_indices(self.edofs)
        self._rows = rows.reshape(-1, m * m)
        self._cols = cols.reshape(-1, m * m)
        self._cache = SparseMatrixCache(self.ndof)

    @property
    def n_elements(self) -> int:
        return int(self.elements.shape[0])

    # ------------------------------------------------------------------
    # FormulationProtocol
    # ------------------------------------------------------------------

    def energy(self, x: np.ndarray) -> float:
        """全体の弾性エネルギー."""
        return float(np.sum(self._element_energies(self._element_displacements(x))))

    def gradient(self, x: np.ndarray) -> np.ndarray:
        """内力ベクトル (ndof,)."""
        fe = self._element_gradients(self._element_displacements(x))
        weights = fe.reshape(self.n_elements, -1).ravel()
        return np.bincount(self.edofs.ravel(), weights=weights, minlength=self.ndof)

    def hessian(self, x: np.ndarray) -> sp.csr_matrix:
        """接線剛性行列 (ndof, ndof) CSR."""
        Ke = self._element_hessians(self._element_displacements(x))
        return self._assemble(Ke)

    def stiffness(self) -> sp.csr_matrix:
        """未変形状態（x = 0）の剛性行列."""
        return self.hessian(np.zeros(self.ndof))

    # ------------------------------------------------------------------
    # サブクラスが実装する要素量
    # ------------------------------------------------------------------

    def _element_energies(self, u_e: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def _element_gradients(self, u_e: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def _element_hessians(self, u_e: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # 内部処理
    # ------------------------------------------------------------------

    def _element_displacements(self, x: np.ndarray) -> np.ndarray:
        """変位ブロックを要素節点変位 (n_e, k, dim) に並べ替える."""
        x = np.asarray(x, dtype=float)
        if x.shape != (self.ndof,):
            raise ValueError(f"変位ベクトル長 {x.shape} != ({self.ndof},)")
        return x.reshape(self.n_bases, self.dim)[self.elements]

    def _assemble(self, Ke: np.ndarray) -> sp.csr_matrix:
        """要素行列 (n_e, m, m) を全体行列へ組み立てる."""
        n_e = self.n_elements
        vals = Ke.reshape(n_e, -1)
        use_parallel = (
            self.n_jobs >= 2 and n_e >= _PARALLEL_MIN_ELEMENTS and self._cache.has_mapping
        )
        if not use_parallel:
            self._cache.add_values(self._rows, self._cols, vals)
            return self._cache.get_matrix(compute_mapping=True)
        return self._assemble_parallel(vals)

    def _assemble_parallel(self, vals: np.ndarray) -> sp.csr_matrix:
        chunks = [c for c in np.array_split(np.arange(self.n_elements), self.n_jobs) if c.size]
        workers = [SparseMatrixCache.like(self._cache) for _ in chunks]
        logger.debug("Parallel hessian assembly: %d workers", len(workers))

        def _fill(cache: SparseMatrixCache, idx: np.ndarray) -> None:
            cache.add_values(self._rows[idx], self._cols[idx], vals[idx])

        with ThreadPoolExecutor(max_workers=len(workers)) as pool:
            list(pool.map(_fill, workers, chunks))

        total = workers[0]
        for w in workers[1:]:
            total += w
        return total.get_matrix()


# ========== 線形弾性 ==========


class LinearElasticity(SimplexFormulation):
    """微小ひずみ線形弾性: ψ = μ ε:ε + λ/2 tr(ε)².

    要素剛性 Ke = V Bᵀ D B は構築時に一度だけ計算する。
    """

    name = "LinearElasticity"
    is_linear = True

    def __init__(
        self,
        nodes: np.ndarray,
        elements: np.ndarray,
        material: ElasticMaterial,
        *,
        thickness: float = 1.0,
        n_jobs: int = 1,
    ) -> None:
        super().__init__(nodes, elements, material, thickness=thickness, n_jobs=n_jobs)
        B = strain_displacement_matrices(self.dN)
        D = material.tangent(self.dim)
        self._Ke = np.einsum("evi,vw,ewj->eij", B, D, B) * self.volumes[:, None, None]

    def _element_energies(self, u_e):
        u = u_e.reshape(self.n_elements, -1)
        return 0.5 * np.einsum("ei,eij,ej->e", u, self._Ke, u)

    def _element_gradients(self, u_e):
        u = u_e.reshape(self.n_elements, -1)
        return np.einsum("eij,ej->ei", self._Ke, u)

    def _element_hessians(self, u_e):
        return self._Ke


# ========== St.Venant-Kirchhoff ==========


class SaintVenantKirchhoff(SimplexFormulation):
    """Total Lagrangian の St.Venant-Kirchhoff 超弾性.

    F = I + ∇u, E = ½(FᵀF − I), S = λ tr(E) I + 2μ E, P = F S
    ψ = μ E:E + λ/2 tr(E)²

    接線剛性（材料 + 幾何剛性）:
      K_{ai,bk} = V Σ_jl dN_aj dN_bl ∂P_ij/∂F_kl
                = V [ λ G_ai G_bk + μ G_ak G_bi + μ (dN dNᵀ)_ab (FFᵀ)_ik
                      + δ_ik (dN S dNᵀ)_ab ],   G = dN Fᵀ
    """

    name = "SaintVenantKirchhoff"
    is_linear = False

    def _kinematics(self, u_e):
        H = displacement_gradients(u_e, self.dN)
        F = H + np.eye(self.dim)[None, :, :]
        E = 0.5 * (np.einsum("eki,ekj->eij", F, F) - np.eye(self.dim)[None, :, :])
        lam, mu = self.material.lame
        trE = np.trace(E, axis1=1, axis2=2)
        S = lam * trE[:, None, None] * np.eye(self.dim)[None, :, :] + 2.0 * mu * E
        return F, E, trE, S

    def _element_energies(self, u_e):
        lam, mu = self.material.lame
        _, E, trE, _ = self._kinematics(u_e)
        psi = mu * np.einsum("eij,eij->e", E, E) + 0.5 * lam * trE**2
        return self.volumes * psi

    def _element_gradients(self, u_e):
        F, _, _, S = self._kinematics(u_e)
        P = np.einsum("eim,emj->eij", F, S)
        fe = np.einsum("eij,eaj->eai", P, self.dN)
        return fe * self.volumes[:, None, None]

    def _element_hessians(self, u_e):
        lam, mu = self.material.lame
        F, _, _, S = self._kinematics(u_e)
        dN = self.dN
        G = np.einsum("eaj,eij->eai", dN, F)
        dNdN = np.einsum("eaj,ebj->eab", dN, dN)
        FFt = np.einsum("eij,ekj->eik", F, F)
        dSd = np.einsum("eaj,ejl,ebl->eab", dN, S, dN)
        eye = np.eye(self.dim)

        K = lam * np.einsum("eai,ebk->eaibk", G, G)
        K += mu * np.einsum("eak,ebi->eaibk", G, G)
        K += mu * np.einsum("eab,eik->eaibk", dNdN, FFt)
        K += np.einsum("eab,ik->eaibk", dSd, eye)
        K *= self.volumes[:, None, None, None, None]
        m = self.edofs.shape[1]
        return K.reshape(self.n_elements, m, m)


# ========== 定式化の選択 ==========

FORMULATIONS: dict[str, type[SimplexFormulation]] = {
    LinearElasticity.name: LinearElasticity,
    SaintVenantKirchhoff.name: SaintVenantKirchhoff,
}


def create_formulation(
    name: str,
    nodes: np.ndarray,
    elements: np.ndarray,
    material: ElasticMaterial,
    **kwargs,
) -> SimplexFormulation:
    """定式化名から定式化オブジェクトを構築する（構築時に一度だけ解決）."""
    try:
        cls = FORMULATIONS[name]
    except KeyError:
        raise ValueError(
            f"未対応の定式化: {name!r}（対応: {', '.join(sorted(FORMULATIONS))}）"
        ) from None
    return cls(nodes, elements, material, **kwargs)


# ========== 質量行列 ==========


def assemble_mass_matrix(
    nodes: np.ndarray,
    elements: np.ndarray,
    density: float,
    *,
    thickness: float = 1.0,
    lumped: bool = False,
) -> sp.csr_matrix:
    """P1 単体要素の質量行列（COO → CSR）.

    整合質量: M_ab = ρV/((d+1)(d+2)) (1 + δ_ab)、各変位成分に同じブロック。
    集中質量: 整合質量の行和を対角に置く。

    Args:
        nodes: (N, dim) 節点座標
        elements: (n_e, dim + 1) 接続配列
        density: 密度 ρ
        thickness: 厚み（2D のみ）
        lumped: 集中質量にするか

    Returns:
        M: (N * dim, N * dim) CSR
    """
    if density <= 0:
        raise ValueError(f"密度は正値: {density}")
    nodes = np.asarray(nodes, dtype=float)
    elements = np.asarray(elements, dtype=np.int64)
    dim = nodes.shape[1]
    k = dim + 1
    ndof = nodes.shape[0] * dim

    _, measure = simplex_shape_gradients(nodes, elements)
    vol = _element_measures(measure, dim, thickness)
    M_ab = (np.ones((k, k)) + np.eye(k)) / ((dim + 1) * (dim + 2))
    # (n_e, k, dim, k, dim) ← M_ab δ_ik
    Me = np.einsum("e,ab,ik->eaibk", density * vol, M_ab, np.eye(dim))
    Me = Me.reshape(len(elements), k * dim, k * dim)
    if lumped:
        diag = Me.sum(axis=2)
        Me = np.einsum("ei,ij->eij", diag, np.eye(k * dim))

    rows, cols = coo_indices(element_dofs(elements, dim))
    M = sp.coo_matrix((Me.ravel(), (rows, cols)), shape=(ndof, ndof)).tocsr()
    M.sum_duplicates()
    return M
