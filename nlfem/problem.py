"""非線形問題（外部の Newton 系オプティマイザ向けの目的関数）.

オプティマイザは Dirichlet 拘束 DOF を消去した縮約ベクトル x で
value / gradient / hessian / is_step_valid を呼ぶ。内部ではすべて全体ベクトルに
展開して評価し、結果を縮約空間へ射影して返す。全体ベクトルを直接渡す
``*_from_full`` 版も同じ結果を返す。

目的関数（s = dt²/2, x̃ = x_prev + dt v_prev; 静的問題では s = 1、慣性項なし）:

    f(x) = s [E_el(x) + E_body(x) + κ B(x)] + ½ (x − x̃)ᵀ M (x − x̃)

  E_el : 内部（弾性）エネルギー（定式化に委譲）
  E_body: 外力ポテンシャル（荷重提供者に委譲）
  B    : バリア接触ポテンシャル（接触が有効なときのみ、候補集合は毎回構築）

右辺ベクトル（current_rhs）:

    rhs = s f_ext(t) + M x̃,  拘束 DOF 行は規定値で上書き

勾配は g = s ∇(E_el + κB) + M x − rhs を縮約したもの。拘束 DOF 行の値は
展開時の規定値として使われる。

時間ステップの管理:
  init_timestep(x_prev, v_prev, dt) → （Newton 反復で任意回の評価）
  → update_quantities(t, x) → 次のステップ
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np
import scipy.sparse as sp

from nlfem.context import SimulationContext
from nlfem.contact.module import BarrierContactModule
from nlfem.core.cache import CachedValue
from nlfem.core.config import ProblemConfig
from nlfem.core.protocols import ContactModuleProtocol
from nlfem.reduction import DofReduction, dofs_to_points, pad_matrix, pad_vector

if TYPE_CHECKING:
    from nlfem.contact.constraints import CandidateSet

logger = logging.getLogger(__name__)


class NLProblem:
    """陰的時間積分・Dirichlet 消去・バリア接触を含む非線形目的関数.

    Args:
        context: シミュレーションコンテキスト（読み取り専用として扱う）
        config: 接触スイッチ・バリア重み・作用距離。None なら既定値
        contact: 接触モジュール。None で接触が有効なら BarrierContactModule
        t: 初期時刻

    Attributes:
        full_size: 全体 DOF 数
        reduced_size: 縮約 DOF 数（= full_size − 拘束 DOF 数、不変）
        boundary_nodes: 拘束 DOF（昇順・一意）
        t: 現在時刻
        is_time_dependent: 陰的時間積分を行うか
        x_prev, v_prev, dt: 前ステップの位置・速度と時間刻み
    """

    def __init__(
        self,
        context: SimulationContext,
        config: ProblemConfig | None = None,
        *,
        contact: ContactModuleProtocol | None = None,
        t: float = 0.0,
    ) -> None:
        self.context = context
        self.config = config if config is not None else ProblemConfig()
        self.formulation = context.formulation
        self.loads = context.loads
        self.dim = context.dimension
        self.n_bases = context.n_bases

        self.full_size = context.full_size
        self._reduction = DofReduction(self.full_size, context.boundary_nodes)
        self.reduced_size = self._reduction.reduced_size
        self.boundary_nodes = self._reduction.boundary_nodes

        self.t = float(t)
        self.is_time_dependent = context.is_time_dependent
        self.x_prev: np.ndarray | None = None
        self.v_prev: np.ndarray | None = None
        self.dt: float | None = None

        self._mass = pad_matrix(context.mass, self.full_size) if context.mass is not None else None
        self._rhs: CachedValue[np.ndarray] = CachedValue()
        self._stiffness: CachedValue[sp.csr_matrix] = CachedValue()

        self.contact = contact
        if self.contact_active:
            if context.rest_positions is None:
                raise ValueError("接触を有効にするには境界の参照配置 rest_positions が必要です。")
            if self.contact is None:
                self.contact = BarrierContactModule()

        assert self.reduced_size + self.boundary_nodes.size == self.full_size

    # ------------------------------------------------------------------
    # 状態
    # ------------------------------------------------------------------

    @property
    def contact_active(self) -> bool:
        """接触項を評価するか（設定のスイッチとコンテキストの両方が真のとき）."""
        return bool(self.config.contact_enabled and self.context.has_collision)

    @property
    def rhs_valid(self) -> bool:
        """右辺ベクトルのキャッシュが有効か."""
        return self._rhs.valid

    def init_timestep(self, x_prev: np.ndarray, v_prev: np.ndarray, dt: float) -> None:
        """前ステップの位置・速度と時間刻みを記録する（右辺キャッシュは変更しない）."""
        if dt <= 0:
            raise ValueError(f"dt は正値: {dt}")
        self.x_prev = self._check_full(x_prev).copy()
        self.v_prev = self._check_full(v_prev).copy()
        self.dt = float(dt)

    def update_quantities(self, t: float, x: np.ndarray) -> None:
        """ステップ完了時の更新。時間依存問題でのみ作用し、それ以外は何もしない.

        v_prev = (x − x_prev)/dt, x_prev = x とし、右辺キャッシュを無効化して時刻を進める。

        Args:
            t: 新しい時刻
            x: (full_size,) 収束した全体ベクトル
        """
        if not self.is_time_dependent:
            return
        self._require_timestep()
        x = self._check_full(x)
        self.v_prev = (x - self.x_prev) / self.dt
        self.x_prev = x.copy()
        self._rhs.invalidate()
        self.t = float(t)

    def current_rhs(self) -> np.ndarray:
        """右辺ベクトル (full_size,)（読み取り専用、無効化まで再利用）."""
        return self._rhs.get(self._compute_rhs)

    # ------------------------------------------------------------------
    # 縮約・展開
    # ------------------------------------------------------------------

    def expand(self, x: np.ndarray) -> np.ndarray:
        """縮約ベクトルを全体ベクトルへ展開する（拘束 DOF は current_rhs の値）."""
        x = np.asarray(x, dtype=float)
        if x.shape != (self.reduced_size,):
            raise ValueError(f"縮約ベクトル長 {x.shape} != ({self.reduced_size},)")
        return self._reduction.reduced_to_full(x, self.current_rhs())

    def project(self, full: np.ndarray) -> np.ndarray:
        """全体ベクトルから拘束 DOF を取り除く."""
        return self._reduction.full_to_reduced(self._check_full(full))

    # ------------------------------------------------------------------
    # 目的関数（縮約入力）
    # ------------------------------------------------------------------

    def value(self, x: np.ndarray) -> float:
        """目的関数値（非有限値もそのまま返す）."""
        return self.value_from_full(self.expand(x))

    def gradient(self, x: np.ndarray) -> np.ndarray:
        """縮約勾配 (reduced_size,)."""
        return self.gradient_from_full(self.expand(x))

    def gradient_no_rhs(self, x: np.ndarray) -> np.ndarray:
        """内力 + 接触力 (full_size,)（右辺・慣性を含まない）."""
        return self.gradient_no_rhs_from_full(self.expand(x))

    def hessian(self, x: np.ndarray) -> sp.csr_matrix:
        """縮約ヘッセ行列 (reduced_size, reduced_size)."""
        return self.hessian_from_full(self.expand(x))

    def hessian_full(self, x: np.ndarray) -> sp.csr_matrix:
        """全体ヘッセ行列 (full_size, full_size)."""
        return self.hessian_full_from_full(self.expand(x))

    def is_step_valid(self, x0: np.ndarray, x1: np.ndarray) -> bool:
        """ステップ判定。接触が無効なら常に True.

        接触が有効なときは x0 → x1 の運動が衝突を **含む** ときに True を返す
        （衝突判定の結果を反転した値）。衝突の有無そのものは
        is_step_collision_free で得られる。
        """
        if not self.contact_active:
            return True
        return self.is_step_valid_from_full(self.expand(x0), self.expand(x1))

    def is_step_collision_free(self, x0: np.ndarray, x1: np.ndarray) -> bool:
        """x0 → x1 の線形運動が衝突しないか（接触が無効なら True）."""
        if not self.contact_active:
            return True
        return self._collision_free(self.expand(x0), self.expand(x1))

    # ------------------------------------------------------------------
    # 目的関数（全体入力）
    # ------------------------------------------------------------------

    def value_from_full(self, full: np.ndarray) -> float:
        full = self._check_full(full)
        elastic_energy = self.formulation.energy(full)
        body_energy = self.loads.compute_energy(self._displacement(full), self.t)

        collision_energy = 0.0
        if self.contact_active:
            positions, candidates = self._contact_state(full)
            collision_energy = self.contact.compute_barrier_potential(
                self.context.rest_positions,
                positions,
                self.context.boundary_edges,
                self.context.boundary_faces,
                candidates,
                self.config.dhat_squared,
            )

        scaling = 1.0
        inertia_energy = 0.0
        if self.is_time_dependent:
            scaling = self._scaling()
            tmp = full - self._inertia_target()
            inertia_energy = 0.5 * float(tmp @ (self._mass @ tmp))

        kappa = self.config.barrier_stiffness
        return scaling * (elastic_energy + body_energy + kappa * collision_energy) + inertia_energy

    def gradient_from_full(self, full: np.ndarray) -> np.ndarray:
        full = self._check_full(full)
        grad = self.gradient_no_rhs_from_full(full)
        if self.is_time_dependent:
            grad = self._scaling() * grad + self._mass @ full
        grad = grad - self.current_rhs()
        return self.project(grad)

    def gradient_no_rhs_from_full(self, full: np.ndarray) -> np.ndarray:
        full = self._check_full(full)
        grad = np.asarray(self.formulation.gradient(full), dtype=float)
        if self.contact_active:
            positions, candidates = self._contact_state(full)
            barrier_grad = self.contact.compute_barrier_potential_gradient(
                self.context.rest_positions,
                positions,
                self.context.boundary_edges,
                self.context.boundary_faces,
                candidates,
                self.config.dhat_squared,
            )
            grad = grad + self.config.barrier_stiffness * pad_vector(barrier_grad, self.full_size)
        assert grad.shape == (self.full_size,)
        return grad

    def hessian_from_full(self, full: np.ndarray) -> sp.csr_matrix:
        return self._reduction.reduce_matrix(self.hessian_full_from_full(full))

    def hessian_full_from_full(self, full: np.ndarray) -> sp.csr_matrix:
        full = self._check_full(full)
        if self.formulation.is_linear:
            hessian = self._stiffness.get(self._compute_stiffness).copy()
        else:
            hessian = sp.csr_matrix(self.formulation.hessian(full))

        if self.contact_active:
            positions, candidates = self._contact_state(full)
            barrier_hess = self.contact.compute_barrier_potential_hessian(
                self.context.rest_positions,
                positions,
                self.context.boundary_edges,
                self.context.boundary_faces,
                candidates,
                self.config.dhat_squared,
            )
            hessian = hessian + self.config.barrier_stiffness * pad_matrix(
                barrier_hess, self.full_size
            )

        if self.is_time_dependent:
            hessian = self._scaling() * hessian + self._mass

        hessian = sp.csr_matrix(hessian)
        assert hessian.shape == (self.full_size, self.full_size)
        return hessian

    def is_step_valid_from_full(self, full0: np.ndarray, full1: np.ndarray) -> bool:
        if not self.contact_active:
            return True
        return not self._collision_free(self._check_full(full0), self._check_full(full1))

    # ------------------------------------------------------------------
    # 内部処理
    # ------------------------------------------------------------------

    def _check_full(self, full: np.ndarray) -> np.ndarray:
        full = np.asarray(full, dtype=float)
        if full.shape != (self.full_size,):
            raise ValueError(f"全体ベクトル長 {full.shape} != ({self.full_size},)")
        return full

    def _require_timestep(self) -> None:
        if self.dt is None:
            raise RuntimeError("時間依存問題では評価前に init_timestep を呼ぶ必要があります。")

    def _scaling(self) -> float:
        self._require_timestep()
        return 0.5 * self.dt * self.dt

    def _inertia_target(self) -> np.ndarray:
        self._require_timestep()
        return self.x_prev + self.dt * self.v_prev

    def _displacement(self, full: np.ndarray) -> np.ndarray:
        return full[: self.n_bases * self.dim]

    def _positions(self, full: np.ndarray) -> np.ndarray:
        """境界の現在配置 = 参照配置 + 変位（節点優先インターリーブで並べ替え）."""
        return self.context.rest_positions + dofs_to_points(full, self.dim, self.n_bases)

    def _contact_state(self, full: np.ndarray) -> tuple[np.ndarray, CandidateSet]:
        positions = self._positions(full)
        candidates = self.contact.construct_constraint_set(
            positions,
            self.context.boundary_edges,
            self.context.boundary_faces,
            self.config.dhat_squared,
        )
        return positions, candidates

    def _collision_free(self, full0: np.ndarray, full1: np.ndarray) -> bool:
        return self.contact.is_step_collision_free(
            self._positions(full0),
            self._positions(full1),
            self.context.boundary_edges,
            self.context.boundary_faces,
        )

    def _compute_rhs(self) -> np.ndarray:
        logger.debug("Computing rhs (t=%g)", self.t)
        rhs = pad_vector(self.loads.compute_energy_grad(self.t), self.full_size).copy()
        if self.is_time_dependent:
            rhs *= self._scaling()
            rhs += self._mass @ self._inertia_target()
        self.loads.set_bc(rhs, self.t)
        assert rhs.shape == (self.full_size,)
        rhs.setflags(write=False)
        return rhs

    def _compute_stiffness(self) -> sp.csr_matrix:
        logger.debug("Caching linear stiffness (%s)", self.formulation.name)
        stiffness = sp.csr_matrix(self.formulation.stiffness())
        if stiffness.shape != (self.full_size, self.full_size):
            raise ValueError(
                f"剛性行列サイズ {stiffness.shape} != ({self.full_size}, {self.full_size})"
            )
        return stiffness
