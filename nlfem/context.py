"""シミュレーションコンテキスト（NLProblem が参照する読み取り専用データ）."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import scipy.sparse as sp

from nlfem.assembly import assemble_mass_matrix, create_formulation
from nlfem.core.protocols import FormulationProtocol, LoadProviderProtocol
from nlfem.loads import RhsAssembler
from nlfem.materials.elastic import ElasticMaterial
from nlfem.mesh import boundary_facets, facet_edges
from nlfem.reduction import dofs_to_points


@dataclass
class SimulationContext:
    """定式化・荷重・質量・境界形状の束.

    Attributes:
        formulation: 材料定式化
        loads: 荷重・境界条件の提供者
        dimension: 空間次元
        n_bases: 変位の基底（節点）数
        mass: (n_bases * dim)² 質量行列（時間依存問題で必須）
        boundary_nodes: Dirichlet 拘束 DOF。None なら loads.boundary_nodes
        n_pressure_bases: 混合定式化の圧力 DOF 数
        rest_positions: 境界の参照配置。(n_bases, dim) または平坦な (n_bases * dim,)
        boundary_edges: (n_edges, 2) 接触用の境界辺
        boundary_faces: (n_faces, 3) 接触用の境界三角形（2D では空）
        has_collision: 接触を考慮するか
        is_time_dependent: 陰的時間積分を行うか
    """

    formulation: FormulationProtocol
    loads: LoadProviderProtocol
    dimension: int
    n_bases: int
    mass: sp.spmatrix | None = None
    boundary_nodes: np.ndarray | None = None
    n_pressure_bases: int = 0
    rest_positions: np.ndarray | None = None
    boundary_edges: np.ndarray = field(default_factory=lambda: np.zeros((0, 2), np.int64))
    boundary_faces: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), np.int64))
    has_collision: bool = False
    is_time_dependent: bool = False

    def __post_init__(self) -> None:
        if self.dimension not in (2, 3):
            raise ValueError(f"dimension は 2 または 3: {self.dimension}")
        if self.n_bases <= 0:
            raise ValueError(f"n_bases は正値: {self.n_bases}")
        if self.n_pressure_bases < 0:
            raise ValueError(f"n_pressure_bases は非負: {self.n_pressure_bases}")
        if self.n_pressure_bases > 0 and not self.formulation.is_mixed:
            raise ValueError("圧力 DOF は混合定式化でのみ指定できます。")

        if self.boundary_nodes is None:
            self.boundary_nodes = self.loads.boundary_nodes
        self.boundary_nodes = np.asarray(self.boundary_nodes, dtype=np.int64).ravel()

        ndof = self.n_bases * self.dimension
        if self.mass is not None:
            self.mass = sp.csr_matrix(self.mass)
            if self.mass.shape != (ndof, ndof):
                raise ValueError(f"質量行列サイズ {self.mass.shape} != ({ndof}, {ndof})")
        elif self.is_time_dependent:
            raise ValueError("時間依存問題には質量行列が必要です。")

        if self.rest_positions is not None:
            rest = np.asarray(self.rest_positions, dtype=float)
            if rest.ndim == 1:
                rest = dofs_to_points(rest, self.dimension)
            if rest.shape != (self.n_bases, self.dimension):
                raise ValueError(
                    f"rest_positions の形状 {rest.shape} != ({self.n_bases}, {self.dimension})"
                )
            self.rest_positions = rest

        self.boundary_edges = np.asarray(self.boundary_edges, dtype=np.int64).reshape(-1, 2)
        self.boundary_faces = np.asarray(self.boundary_faces, dtype=np.int64).reshape(-1, 3)

    @property
    def full_size(self) -> int:
        """全体 DOF 数 = n_bases * dim + n_pressure_bases."""
        return self.n_bases * self.dimension + self.n_pressure_bases

    @classmethod
    def from_mesh(
        cls,
        nodes: np.ndarray,
        elements: np.ndarray,
        material: ElasticMaterial,
        *,
        formulation: str = "LinearElasticity",
        dirichlet=(),
        neumann=(),
        body_force=None,
        n_boundary_samples: int = 2,
        thickness: float = 1.0,
        has_collision: bool = False,
        is_time_dependent: bool = False,
        lumped_mass: bool = False,
        n_jobs: int = 1,
    ) -> SimulationContext:
        """単体メッシュから参照実装一式のコンテキストを構築する.

        境界形状（接触用の辺・三角形）は要素の境界ファセットから抽出し、
        参照配置は節点座標そのものを使う。

        Args:
            nodes: (N, dim) 節点座標
            elements: (n_e, dim + 1) 接続配列
            material: 弾性材料（density は質量・物体力に使う）
            formulation: 定式化名（"LinearElasticity" / "SaintVenantKirchhoff"）
            dirichlet: DirichletBC の列
            neumann: NeumannBC の列
            body_force: 単位質量あたりの物体力
            n_boundary_samples: 境界積分の積分点数
            thickness: 厚み（2D のみ）
            has_collision: 接触を考慮するか
            is_time_dependent: 陰的時間積分を行うか
            lumped_mass: 集中質量を使うか
            n_jobs: ヘッセ行列アセンブリの並列ワーカー数

        Returns:
            SimulationContext
        """
        nodes = np.asarray(nodes, dtype=float)
        elements = np.asarray(elements, dtype=np.int64)
        dim = nodes.shape[1]

        form = create_formulation(
            formulation, nodes, elements, material, thickness=thickness, n_jobs=n_jobs
        )
        loads = RhsAssembler(
            nodes,
            elements,
            body_force=body_force,
            density=material.density,
            dirichlet=dirichlet,
            neumann=neumann,
            n_boundary_samples=n_boundary_samples,
            thickness=thickness,
        )
        mass = assemble_mass_matrix(
            nodes, elements, material.density, thickness=thickness, lumped=lumped_mass
        )

        facets = boundary_facets(elements)
        if dim == 2:
            edges, faces = facets, np.zeros((0, 3), dtype=np.int64)
        else:
            edges, faces = facet_edges(facets), facets

        return cls(
            formulation=form,
            loads=loads,
            dimension=dim,
            n_bases=nodes.shape[0],
            mass=mass,
            rest_positions=nodes,
            boundary_edges=edges,
            boundary_faces=faces,
            has_collision=has_collision,
            is_time_dependent=is_time_dependent,
        )
