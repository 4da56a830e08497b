"""一次単体要素の弾性定式化・質量行列のテスト.

検証内容:
  - エネルギー ⇔ 勾配 ⇔ ヘッセ行列の整合性（中心差分）
  - St.Venant-Kirchhoff の未変形接線 = 線形弾性剛性
  - 剛体並進でエネルギー・内力ゼロ
  - 質量行列の総和 = ρ V dim、集中質量
  - 並列アセンブリと逐次アセンブリの一致
"""

from __future__ import annotations

import itertools

import numpy as np
import pytest
import scipy.sparse as sp

import nlfem.assembly as assembly
from nlfem.assembly import (
    LinearElasticity,
    SaintVenantKirchhoff,
    assemble_mass_matrix,
    create_formulation,
)
from nlfem.elements.simplex import (
    element_dofs,
    simplex_shape_gradients,
    strain_displacement_matrices,
)
from nlfem.materials.elastic import ElasticMaterial, constitutive_3d, lame_parameters

_MAT = ElasticMaterial(E=100.0, nu=0.3, density=2.0)


# ====================================================================
# メッシュヘルパー
# ====================================================================


def _square_mesh(nx=2, ny=2, lx=1.0, ly=1.0):
    """矩形領域の構造化 TRI3 メッシュ（反時計回り）."""
    xs = np.linspace(0.0, lx, nx + 1)
    ys = np.linspace(0.0, ly, ny + 1)
    nodes = np.array([[x, y] for y in ys for x in xs])
    tris = []
    for j in range(ny):
        for i in range(nx):
            n0 = j * (nx + 1) + i
            n1, n2, n3 = n0 + 1, n0 + nx + 2, n0 + nx + 1
            tris += [[n0, n1, n2], [n0, n2, n3]]
    return nodes, np.array(tris)


def _cube_mesh(n=1, length=1.0):
    """立方体の Kuhn 分割 TET4 メッシュ（正の向きに揃える）."""
    g = np.linspace(0.0, length, n + 1)
    nodes = np.array([[x, y, z] for z in g for y in g for x in g])

    def nid(i, j, k):
        return (k * (n + 1) + j) * (n + 1) + i

    tets = []
    for i, j, k in itertools.product(range(n), repeat=3):
        for perm in itertools.permutations(range(3)):
            p = np.array([i, j, k])
            path = [nid(*p)]
            for axis in perm:
                p = p.copy()
                p[axis] += 1
                path.append(nid(*p))
            tets.append(path)
    tets = np.array(tets)
    c = nodes[tets]
    det = np.linalg.det(c[:, 1:] - c[:, :1])
    flip = det < 0
    tets[flip, 1], tets[flip, 2] = tets[flip, 2].copy(), tets[flip, 1].copy()
    return nodes, tets


def _fd_gradient(f, x, h=1e-6):
    g = np.zeros_like(x)
    for i in range(x.size):
        e = np.zeros_like(x)
        e[i] = h
        g[i] = (f(x + e) - f(x - e)) / (2 * h)
    return g


def _fd_jacobian(grad, x, h=1e-6):
    J = np.zeros((x.size, x.size))
    for i in range(x.size):
        e = np.zeros_like(x)
        e[i] = h
        J[:, i] = (grad(x + e) - grad(x - e)) / (2 * h)
    return J


_MESHES = {"2d": _square_mesh, "3d": _cube_mesh}


# ====================================================================
# 要素計算
# ====================================================================


class TestSimplexElements:
    """形状関数勾配・体積・B マトリクス."""

    def test_unit_triangle(self):
        nodes = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
        dN, measure = simplex_shape_gradients(nodes, np.array([[0, 1, 2]]))
        assert measure[0] == pytest.approx(0.5)
        np.testing.assert_allclose(dN[0], [[-1.0, -1.0], [1.0, 0.0], [0.0, 1.0]])

    def test_unit_tet_volume(self):
        nodes = np.vstack([np.zeros(3), np.eye(3)])
        _, measure = simplex_shape_gradients(nodes, np.array([[0, 1, 2, 3]]))
        assert measure[0] == pytest.approx(1.0 / 6.0)

    def test_partition_of_unity(self):
        nodes, tets = _cube_mesh(2)
        dN, measure = simplex_shape_gradients(nodes, tets)
        np.testing.assert_allclose(dN.sum(axis=1), 0.0, atol=1e-12)
        assert measure.sum() == pytest.approx(1.0)

    def test_inverted_element_raises(self):
        nodes = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
        with pytest.raises(ValueError, match="反転"):
            simplex_shape_gradients(nodes, np.array([[0, 2, 1]]))

    def test_wrong_node_count_raises(self):
        nodes = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
        with pytest.raises(ValueError):
            simplex_shape_gradients(nodes, np.array([[0, 1, 2, 3]]))

    def test_element_dofs_interleaved(self):
        edofs = element_dofs(np.array([[0, 2, 3]]), 2)
        np.testing.assert_array_equal(edofs, [[0, 1, 4, 5, 6, 7]])

    def test_b_matrix_rigid_rotation_zero_strain(self):
        """微小回転 u = ω × X は微小ひずみゼロ."""
        nodes = np.vstack([np.zeros(3), np.eye(3)]) + 0.1
        dN, _ = simplex_shape_gradients(nodes, np.array([[0, 1, 2, 3]]))
        B = strain_displacement_matrices(dN)
        omega = np.array([0.3, -0.2, 0.5])
        u = np.cross(omega, nodes).ravel()
        np.testing.assert_allclose(B[0] @ u, 0.0, atol=1e-12)


class TestMaterial:
    """弾性材料."""

    def test_lame(self):
        lam, mu = lame_parameters(210e3, 0.3)
        assert mu == pytest.approx(210e3 / 2.6)
        assert lam == pytest.approx(210e3 * 0.3 / (1.3 * 0.4))

    def test_3d_tangent_symmetric(self):
        D = constitutive_3d(1.0, 0.25)
        np.testing.assert_allclose(D, D.T)
        assert D[3, 3] == pytest.approx(0.4)

    @pytest.mark.parametrize(
        "kwargs", [dict(E=0.0, nu=0.3), dict(E=1.0, nu=0.5), dict(E=1.0, nu=0.3, density=0.0)]
    )
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            ElasticMaterial(**kwargs)

    def test_unsupported_dimension(self):
        with pytest.raises(ValueError):
            _MAT.tangent(1)


# ====================================================================
# 定式化
# ====================================================================


@pytest.mark.parametrize("cls", [LinearElasticity, SaintVenantKirchhoff])
@pytest.mark.parametrize("dim", ["2d", "3d"])
class TestFormulationConsistency:
    """エネルギー・勾配・ヘッセ行列の整合."""

    def _setup(self, cls, dim):
        nodes, elems = _MESHES[dim]()
        form = cls(nodes, elems, _MAT)
        rng = np.random.default_rng(42)
        x = 0.05 * rng.standard_normal(form.ndof)
        return form, x

    def test_gradient_matches_fd(self, cls, dim):
        form, x = self._setup(cls, dim)
        np.testing.assert_allclose(
            form.gradient(x), _fd_gradient(form.energy, x), rtol=1e-5, atol=1e-6
        )

    def test_hessian_matches_fd(self, cls, dim):
        form, x = self._setup(cls, dim)
        H = form.hessian(x)
        assert sp.issparse(H)
        np.testing.assert_allclose(
            H.toarray(), _fd_jacobian(form.gradient, x), rtol=1e-5, atol=1e-5
        )

    def test_hessian_symmetric(self, cls, dim):
        form, x = self._setup(cls, dim)
        H = form.hessian(x).toarray()
        np.testing.assert_allclose(H, H.T, atol=1e-9)

    def test_rigid_translation(self, cls, dim):
        form, _ = self._setup(cls, dim)
        d = form.dim
        x = np.tile(np.arange(1.0, d + 1.0), form.n_bases)
        assert form.energy(x) == pytest.approx(0.0, abs=1e-10)
        np.testing.assert_allclose(form.gradient(x), 0.0, atol=1e-9)

    def test_repeated_hessian_uses_cache(self, cls, dim):
        """2 回目以降（ウォーム）も初回と同じ行列."""
        form, x = self._setup(cls, dim)
        H1 = form.hessian(x)
        assert form._cache.has_mapping
        H2 = form.hessian(x)
        np.testing.assert_allclose(H1.toarray(), H2.toarray(), atol=1e-12)


class TestLinearElasticity:
    """線形弾性固有の性質."""

    def test_energy_quadratic(self):
        nodes, elems = _square_mesh()
        form = LinearElasticity(nodes, elems, _MAT)
        x = np.random.default_rng(0).standard_normal(form.ndof)
        K = form.stiffness()
        assert form.energy(x) == pytest.approx(0.5 * x @ (K @ x))
        np.testing.assert_allclose(form.gradient(x), K @ x)
        assert form.is_linear and not form.is_mixed

    def test_uniaxial_strain_energy(self):
        """一様ひずみ εxx = e の平面ひずみエネルギー = ½(λ+2μ) e² A t."""
        nodes, elems = _square_mesh(3, 2, lx=2.0, ly=1.0)
        form = LinearElasticity(nodes, elems, _MAT, thickness=0.5)
        e = 1e-3
        u = np.zeros_like(nodes)
        u[:, 0] = e * nodes[:, 0]
        lam, mu = _MAT.lame
        assert form.energy(u.ravel()) == pytest.approx(0.5 * (lam + 2 * mu) * e**2 * 2.0 * 0.5)

    def test_wrong_vector_size(self):
        nodes, elems = _square_mesh()
        form = LinearElasticity(nodes, elems, _MAT)
        with pytest.raises(ValueError):
            form.energy(np.zeros(form.ndof + 1))


class TestSaintVenantKirchhoff:
    """St.Venant-Kirchhoff 固有の性質."""

    @pytest.mark.parametrize("dim", ["2d", "3d"])
    def test_tangent_at_rest_equals_linear(self, dim):
        nodes, elems = _MESHES[dim]()
        K_lin = LinearElasticity(nodes, elems, _MAT).stiffness().toarray()
        K_svk = SaintVenantKirchhoff(nodes, elems, _MAT).stiffness().toarray()
        np.testing.assert_allclose(K_svk, K_lin, rtol=1e-10, atol=1e-9)

    def test_rigid_rotation_energy_free(self):
        """有限回転でもエネルギーはゼロ（線形弾性はゼロにならない）."""
        nodes, elems = _square_mesh()
        c, s = np.cos(0.7), np.sin(0.7)
        R = np.array([[c, -s], [s, c]])
        u = (nodes @ R.T - nodes).ravel()
        svk = SaintVenantKirchhoff(nodes, elems, _MAT)
        lin = LinearElasticity(nodes, elems, _MAT)
        assert svk.energy(u) == pytest.approx(0.0, abs=1e-10)
        assert lin.energy(u) > 1e-3
        assert not svk.is_linear


class TestCreateFormulation:
    """名前による定式化の選択."""

    @pytest.mark.parametrize("name,cls", [
        ("LinearElasticity", LinearElasticity),
        ("SaintVenantKirchhoff", SaintVenantKirchhoff),
    ])
    def test_known(self, name, cls):
        nodes, elems = _square_mesh(1, 1)
        form = create_formulation(name, nodes, elems, _MAT, thickness=2.0)
        assert isinstance(form, cls)
        assert form.volumes.sum() == pytest.approx(2.0)

    def test_unknown_raises(self):
        nodes, elems = _square_mesh(1, 1)
        with pytest.raises(ValueError, match="NeoHookean"):
            create_formulation("NeoHookean", nodes, elems, _MAT)


class TestParallelAssembly:
    """ウォーム状態の並列アセンブリ（fan-out / fan-in）."""

    def test_matches_sequential(self, monkeypatch):
        monkeypatch.setattr(assembly, "_PARALLEL_MIN_ELEMENTS", 0)
        nodes, elems = _cube_mesh(2)
        rng = np.random.default_rng(7)
        x = 0.02 * rng.standard_normal(nodes.size)

        seq = SaintVenantKirchhoff(nodes, elems, _MAT, n_jobs=1)
        par = SaintVenantKirchhoff(nodes, elems, _MAT, n_jobs=3)
        par.hessian(np.zeros(par.ndof))  # 初回はコールドで構造を確定
        H_par = par.hessian(x)
        H_seq = seq.hessian(x)
        np.testing.assert_allclose(H_par.toarray(), H_seq.toarray(), rtol=1e-12, atol=1e-10)

    def test_all_cores(self):
        nodes, elems = _square_mesh(1, 1)
        form = LinearElasticity(nodes, elems, _MAT, n_jobs=-1)
        assert form.n_jobs >= 1


# ====================================================================
# 質量行列
# ====================================================================


class TestMassMatrix:
    """P1 整合質量・集中質量."""

    @pytest.mark.parametrize("dim", ["2d", "3d"])
    def test_total_mass(self, dim):
        nodes, elems = _MESHES[dim]()
        d = nodes.shape[1]
        M = assemble_mass_matrix(nodes, elems, 2.0)
        assert M.shape == (nodes.size, nodes.size)
        assert M.sum() == pytest.approx(2.0 * 1.0 * d)
        np.testing.assert_allclose(M.toarray(), M.toarray().T)

    def test_translation_kinetic_energy(self):
        """一様速度 v の運動エネルギー = ½ m |v|²."""
        nodes, elems = _square_mesh(2, 3, lx=2.0, ly=3.0)
        M = assemble_mass_matrix(nodes, elems, 1.5, thickness=0.1)
        v = np.tile([0.3, -0.4], len(nodes))
        mass = 1.5 * 6.0 * 0.1
        assert 0.5 * v @ (M @ v) == pytest.approx(0.5 * mass * 0.25)

    def test_components_decoupled(self):
        nodes, elems = _square_mesh(1, 1)
        M = assemble_mass_matrix(nodes, elems, 1.0).toarray()
        np.testing.assert_allclose(M[0::2, 1::2], 0.0)

    def test_lumped_is_diagonal_with_same_row_sums(self):
        nodes, elems = _cube_mesh(1)
        M = assemble_mass_matrix(nodes, elems, 1.0).toarray()
        ML = assemble_mass_matrix(nodes, elems, 1.0, lumped=True).toarray()
        np.testing.assert_allclose(ML, np.diag(np.diag(ML)))
        np.testing.assert_allclose(np.diag(ML), M.sum(axis=1))

    def test_single_triangle_consistent_mass(self):
        nodes = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
        M = assemble_mass_matrix(nodes, np.array([[0, 1, 2]]), 12.0).toarray()
        # ρA/12 (1 + δ_ab) = 0.5 (1 + δ_ab)
        assert M[0, 0] == pytest.approx(1.0)
        assert M[0, 2] == pytest.approx(0.5)

    def test_invalid_density(self):
        nodes, elems = _square_mesh(1, 1)
        with pytest.raises(ValueError):
            assemble_mass_matrix(nodes, elems, 0.0)
