"""外部協調オブジェクトの抽象インタフェース定義.

Protocol 階層:
  FormulationProtocol:     材料定式化（弾性エネルギー・勾配・ヘッセ行列）
  LoadProviderProtocol:    荷重・Dirichlet 境界条件の提供
  ContactModuleProtocol:   バリア接触（候補集合・ポテンシャル・CCD）

NLProblem はこれらの構造的部分型にのみ依存する。
同梱の参照実装:
  - LinearElasticity, SaintVenantKirchhoff  (nlfem.assembly)
  - RhsAssembler                            (nlfem.loads)
  - BarrierContactModule                    (nlfem.contact)

DOF の並び（全 Protocol 共通）:
  節点優先のインターリーブ。DOF ``node * dim + d`` が節点 node の成分 d。
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np
import scipy.sparse as sp

if TYPE_CHECKING:
    from nlfem.contact.constraints import CandidateSet


@runtime_checkable
class FormulationProtocol(Protocol):
    """材料定式化（Physics Assembler）の共通インタフェース.

    入力 x は全体 DOF ベクトル (full_size,)。出力も同じサイズ。
    非混合定式化では変位ブロック (n_bases * dim,) と一致する。

    Attributes:
        name: 定式化名（ログ用）
        is_linear: ヘッセ行列が反復点に依存しないか
        is_mixed: 圧力などの補助未知数を持つ混合定式化か
    """

    name: str
    is_linear: bool
    is_mixed: bool

    def energy(self, x: np.ndarray) -> float:
        """内部（弾性）エネルギー."""
        ...

    def gradient(self, x: np.ndarray) -> np.ndarray:
        """内部エネルギーの勾配（内力ベクトル）."""
        ...

    def hessian(self, x: np.ndarray) -> sp.csr_matrix:
        """内部エネルギーのヘッセ行列（接線剛性）."""
        ...

    def stiffness(self) -> sp.csr_matrix:
        """線形剛性行列（線形定式化ではヘッセ行列そのもの）."""
        ...


@runtime_checkable
class LoadProviderProtocol(Protocol):
    """荷重・境界条件の提供者.

    Attributes:
        boundary_nodes: Dirichlet 拘束された全体 DOF インデックス（昇順・一意）
    """

    boundary_nodes: np.ndarray

    def compute_energy(self, x: np.ndarray, t: float) -> float:
        """外力ポテンシャル（外力仕事の符号反転）。x は変位ブロック."""
        ...

    def compute_energy_grad(self, t: float) -> np.ndarray:
        """時刻 t の外力ベクトル（変位ブロック (n_bases * dim,)）."""
        ...

    def set_bc(self, vec: np.ndarray, t: float) -> None:
        """vec の拘束 DOF 行を時刻 t の規定値で上書きする（in-place）."""
        ...


@runtime_checkable
class ContactModuleProtocol(Protocol):
    """バリア接触モジュールのインタフェース.

    positions, rest_positions は (n_nodes, dim)。edges (m, 2), faces (k, 3) は
    節点インデックス。勾配・ヘッセ行列はインターリーブ DOF 順。
    """

    def construct_constraint_set(
        self,
        positions: np.ndarray,
        edges: np.ndarray,
        faces: np.ndarray,
        dhat_squared: float,
    ) -> CandidateSet:
        """距離 sqrt(dhat_squared) 未満の接触候補集合を構築する."""
        ...

    def compute_barrier_potential(
        self,
        rest_positions: np.ndarray,
        positions: np.ndarray,
        edges: np.ndarray,
        faces: np.ndarray,
        candidates: CandidateSet,
        dhat_squared: float,
    ) -> float:
        """バリアポテンシャルの総和."""
        ...

    def compute_barrier_potential_gradient(
        self,
        rest_positions: np.ndarray,
        positions: np.ndarray,
        edges: np.ndarray,
        faces: np.ndarray,
        candidates: CandidateSet,
        dhat_squared: float,
    ) -> np.ndarray:
        """バリアポテンシャルの勾配 (n_nodes * dim,)."""
        ...

    def compute_barrier_potential_hessian(
        self,
        rest_positions: np.ndarray,
        positions: np.ndarray,
        edges: np.ndarray,
        faces: np.ndarray,
        candidates: CandidateSet,
        dhat_squared: float,
    ) -> sp.csr_matrix:
        """バリアポテンシャルのヘッセ行列 (n_nodes * dim)²."""
        ...

    def is_step_collision_free(
        self,
        positions0: np.ndarray,
        positions1: np.ndarray,
        edges: np.ndarray,
        faces: np.ndarray,
    ) -> bool:
        """positions0 → positions1 の線形運動が衝突しないか."""
        ...
