"""バリアポテンシャル（総和・勾配・ヘッセ行列）と接触モジュールのテスト."""

from __future__ import annotations

import numpy as np
import pytest
import scipy.sparse as sp

from nlfem.contact.barrier import barrier
from nlfem.contact.constraints import CandidateSet, ContactCandidate, construct_constraint_set
from nlfem.contact.distance import CandidateKind
from nlfem.contact.module import BarrierContactModule
from nlfem.contact.potential import (
    PARALLEL_EDGE_TOL,
    compute_barrier_potential,
    compute_barrier_potential_gradient,
    compute_barrier_potential_hessian,
    edge_cross_squared,
    edge_edge_mollifier,
    edge_edge_mollifier_threshold,
    project_to_psd,
)
from nlfem.core.protocols import ContactModuleProtocol

DHAT2 = 0.04
_NO_FACES = np.zeros((0, 3), dtype=np.int64)


def _scene_2d():
    """線分 0-1 の上方に節点 2 を下端に持つ線分 2-3（d = 0.1）."""
    pos = np.array([[0.0, 0.0], [1.0, 0.0], [0.4, 0.1], [0.45, 1.0]])
    edges = np.array([[0, 1], [2, 3]])
    return pos, edges, _NO_FACES


def _scene_3d():
    """xy 平面の三角形と、その上方で傾いた三角形."""
    pos = np.array(
        [
            [0.0, 0.0, 0.0],
            [1.0, 0.0, 0.0],
            [0.0, 1.0, 0.0],
            [0.3, 0.2, 0.1],
            [0.35, 0.9, 0.15],
            [0.9, 0.3, 0.8],
        ]
    )
    faces = np.array([[0, 1, 2], [3, 4, 5]])
    edges = np.array([[0, 1], [1, 2], [0, 2], [3, 4], [4, 5], [3, 5]])
    return pos, edges, faces


_SCENES = {"2d": _scene_2d, "3d": _scene_3d}


def _energy_fn(rest, edges, faces, candidates, shape):
    def f(x):
        return compute_barrier_potential(
            rest, x.reshape(shape), edges, faces, candidates, DHAT2
        )

    return f


def _grad_fn(rest, edges, faces, candidates, shape):
    def g(x):
        return compute_barrier_potential_gradient(
            rest, x.reshape(shape), edges, faces, candidates, DHAT2
        )

    return g


def _fd(fn, x, h=1e-7):
    cols = []
    for i in range(x.size):
        e = np.zeros_like(x)
        e[i] = h
        cols.append((fn(x + e) - fn(x - e)) / (2 * h))
    return np.array(cols).T


# ---------------------------------------------------------------------------
# ポテンシャル
# ---------------------------------------------------------------------------
@pytest.mark.parametrize("scene", sorted(_SCENES))
class TestBarrierPotentialDerivatives:
    """固定した候補集合での中心差分照合."""

    def test_candidates_nonempty(self, scene):
        pos, edges, faces = _SCENES[scene]()
        assert not construct_constraint_set(pos, edges, faces, DHAT2).empty

    def test_gradient(self, scene):
        pos, edges, faces = _SCENES[scene]()
        cs = construct_constraint_set(pos, edges, faces, DHAT2)
        f = _energy_fn(pos, edges, faces, cs, pos.shape)
        g = compute_barrier_potential_gradient(pos, pos, edges, faces, cs, DHAT2)
        np.testing.assert_allclose(g, _fd(f, pos.ravel()), rtol=1e-5, atol=1e-7)

    def test_hessian(self, scene):
        pos, edges, faces = _SCENES[scene]()
        cs = construct_constraint_set(pos, edges, faces, DHAT2)
        g = _grad_fn(pos, edges, faces, cs, pos.shape)
        H = compute_barrier_potential_hessian(pos, pos, edges, faces, cs, DHAT2)
        assert sp.issparse(H)
        assert H.shape == (pos.size, pos.size)
        np.testing.assert_allclose(H.toarray(), _fd(g, pos.ravel()), rtol=1e-4, atol=1e-5)

    def test_psd_projection(self, scene):
        pos, edges, faces = _SCENES[scene]()
        cs = construct_constraint_set(pos, edges, faces, DHAT2)
        H = compute_barrier_potential_hessian(
            pos, pos, edges, faces, cs, DHAT2, project_hessian_to_psd=True
        ).toarray()
        np.testing.assert_allclose(H, H.T, atol=1e-10)
        assert np.linalg.eigvalsh(H).min() >= -1e-8


class TestBarrierPotentialValues:
    """値・打ち切り・貫通."""

    def test_single_vertex_edge_value(self):
        pos, edges, faces = _scene_2d()
        cs = CandidateSet([ContactCandidate(CandidateKind.VERTEX_EDGE, (2, 0, 1))])
        s = 0.01
        expected = -((s - DHAT2) ** 2) * np.log(s / DHAT2)
        assert compute_barrier_potential(pos, pos, edges, faces, cs, DHAT2) == pytest.approx(
            expected
        )

    def test_empty_candidates(self):
        pos, edges, faces = _scene_2d()
        cs = CandidateSet()
        assert compute_barrier_potential(pos, pos, edges, faces, cs, DHAT2) == 0.0
        np.testing.assert_array_equal(
            compute_barrier_potential_gradient(pos, pos, edges, faces, cs, DHAT2), 0.0
        )
        assert compute_barrier_potential_hessian(pos, pos, edges, faces, cs, DHAT2).nnz == 0

    def test_contact_is_infinite(self):
        pos, edges, faces = _scene_2d()
        cs = CandidateSet([ContactCandidate(CandidateKind.VERTEX_EDGE, (2, 0, 1))])
        touching = pos.copy()
        touching[2, 1] = 0.0
        assert compute_barrier_potential(pos, touching, edges, faces, cs, DHAT2) == np.inf

    def test_gradient_pushes_apart(self):
        """勾配は接近方向に負（ポテンシャルは離れるほど小さい）."""
        pos, edges, faces = _scene_2d()
        cs = construct_constraint_set(pos, edges, faces, DHAT2)
        g = compute_barrier_potential_gradient(pos, pos, edges, faces, cs, DHAT2).reshape(-1, 2)
        assert g[2, 1] < 0.0
        np.testing.assert_allclose(g.sum(axis=0), 0.0, atol=1e-9)

    def test_project_to_psd(self):
        H = np.array([[1.0, 2.0], [2.0, 1.0]])
        P = project_to_psd(H)
        np.testing.assert_allclose(P, [[1.5, 1.5], [1.5, 1.5]])


# ---------------------------------------------------------------------------
# 辺–辺モリファイア
# ---------------------------------------------------------------------------
_EE_PAIR = CandidateSet([ContactCandidate(CandidateKind.EDGE_EDGE, (0, 1, 2, 3))])
_EE_EDGES = np.array([[0, 1], [2, 3]])
# 単位長の辺で c = sin²θ が ε_x に達する角度
_THETA_STAR = float(np.arcsin(np.sqrt(PARALLEL_EDGE_TOL)))


def _near_parallel_edges(angle, gap=0.1):
    """x 軸上の辺 0-1 と、高さ gap で z 軸回りに angle だけ回した単位長の辺 2-3.

    両辺の中点が最近接点で、線間距離は gap。
    """
    d = np.array([np.cos(angle), np.sin(angle), 0.0])
    mid = np.array([0.5, 0.0, gap])
    return np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], mid - 0.5 * d, mid + 0.5 * d])


def _ee_energy(angle, gap=0.1, dhat2=DHAT2):
    pos = _near_parallel_edges(angle, gap)
    return compute_barrier_potential(pos, pos, _EE_EDGES, _NO_FACES, _EE_PAIR, dhat2)


class TestEdgeEdgeMollifier:
    """ほぼ平行な辺–辺ステンシルの平滑な打ち切り."""

    def test_mollifier_values(self):
        eps = 2e-3
        assert edge_edge_mollifier(0.0, eps)[0] == 0.0
        assert edge_edge_mollifier(0.5 * eps, eps)[0] == pytest.approx(0.75)
        assert edge_edge_mollifier(eps, eps) == (1.0, 0.0, 0.0)
        assert edge_edge_mollifier(3.0 * eps, eps) == (1.0, 0.0, 0.0)

    def test_mollifier_derivatives(self):
        eps, h = 2e-3, 1e-9
        for c in (1e-4, 7e-4, 1.5e-3):
            _, dm, d2m = edge_edge_mollifier(c, eps)
            lo = edge_edge_mollifier(c - h, eps)
            hi = edge_edge_mollifier(c + h, eps)
            fd = (hi[0] - lo[0]) / (2 * h)
            fd2 = (hi[1] - lo[1]) / (2 * h)
            assert dm == pytest.approx(fd, rel=1e-6)
            assert d2m == pytest.approx(fd2, rel=1e-6)

    def test_cross_squared(self):
        X = np.random.default_rng(5).standard_normal((4, 3))
        c, g, H = edge_cross_squared(X)
        n = np.cross(X[1] - X[0], X[3] - X[2])
        assert c == pytest.approx(n @ n)

        def f(x):
            return edge_cross_squared(x.reshape(4, 3))[0]

        def grad(x):
            return edge_cross_squared(x.reshape(4, 3))[1]

        np.testing.assert_allclose(g, _fd(f, X.ravel()), rtol=1e-6, atol=1e-8)
        np.testing.assert_allclose(H, _fd(grad, X.ravel()), rtol=1e-6, atol=1e-6)

    def test_threshold_from_rest_lengths(self):
        X_rest = np.array([[0.0, 0.0, 0.0], [2.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 1.0, 3.0]])
        assert edge_edge_mollifier_threshold(X_rest) == pytest.approx(PARALLEL_EDGE_TOL * 36.0)

    def test_close_near_parallel_pair_has_energy(self):
        """作用距離内で 1° だけ交差する辺同士はバリアを持つ."""
        dhat2 = 1e-6
        # 各辺を含む鉛直な三角形（第 3 節点は辺から十分離れている）
        apexes = np.array([[0.5, 0.0, -1.0], [0.5, 0.0, 1.0]])
        pos = np.vstack([_near_parallel_edges(np.radians(1.0), gap=5e-4), apexes])
        faces = np.array([[0, 1, 4], [2, 3, 5]])
        edges = np.array([[0, 1], [0, 4], [1, 4], [2, 3], [2, 5], [3, 5]])
        cs = construct_constraint_set(pos, edges, faces, dhat2)

        assert list(cs) == [ContactCandidate(CandidateKind.EDGE_EDGE, (0, 1, 2, 3))]
        energy = compute_barrier_potential(pos, pos, edges, faces, cs, dhat2)
        assert energy > 0.0

        c = np.sin(np.radians(1.0)) ** 2
        m = edge_edge_mollifier(c, PARALLEL_EDGE_TOL)[0]
        assert 0.0 < m < 1.0
        assert energy == pytest.approx(m * barrier(2.5e-7, dhat2), rel=1e-6)

    def test_continuous_across_threshold(self):
        b = barrier(0.01, DHAT2)
        below = _ee_energy(_THETA_STAR - 1e-7)
        above = _ee_energy(_THETA_STAR + 1e-7)
        assert above == pytest.approx(b)
        assert below == pytest.approx(b, rel=1e-6)

    def test_vanishes_when_parallel(self):
        b = barrier(0.01, DHAT2)
        assert 0.0 < _ee_energy(1e-4) < 1e-4 * b
        assert _ee_energy(0.0) == 0.0
        energies = [_ee_energy(a) for a in np.linspace(1e-3, _THETA_STAR, 6)]
        assert np.all(np.diff(energies) > 0.0)

    def test_derivatives_in_mollified_region(self):
        rest = _near_parallel_edges(np.radians(1.0))
        pos = rest + 1e-3 * np.random.default_rng(6).standard_normal(rest.shape)
        c, _, _ = edge_cross_squared(pos)
        assert c < edge_edge_mollifier_threshold(rest)

        f = _energy_fn(rest, _EE_EDGES, _NO_FACES, _EE_PAIR, pos.shape)
        g = _grad_fn(rest, _EE_EDGES, _NO_FACES, _EE_PAIR, pos.shape)
        grad = compute_barrier_potential_gradient(rest, pos, _EE_EDGES, _NO_FACES, _EE_PAIR, DHAT2)
        H = compute_barrier_potential_hessian(rest, pos, _EE_EDGES, _NO_FACES, _EE_PAIR, DHAT2)
        np.testing.assert_allclose(grad, _fd(f, pos.ravel()), rtol=1e-5, atol=1e-8)
        np.testing.assert_allclose(H.toarray(), _fd(g, pos.ravel()), rtol=1e-4, atol=1e-5)


# ---------------------------------------------------------------------------
# BarrierContactModule
# ---------------------------------------------------------------------------
class TestBarrierContactModule:
    """ContactModuleProtocol の実装."""

    def test_protocol(self):
        assert isinstance(BarrierContactModule(), ContactModuleProtocol)

    def test_delegates(self):
        pos, edges, faces = _scene_3d()
        module = BarrierContactModule()
        cs = module.construct_constraint_set(pos, edges, faces, DHAT2)
        assert module.compute_barrier_potential(pos, pos, edges, faces, cs, DHAT2) == (
            pytest.approx(compute_barrier_potential(pos, pos, edges, faces, cs, DHAT2))
        )
        assert module.is_step_collision_free(pos, pos, edges, faces)

    def test_psd_option(self):
        pos, edges, faces = _scene_3d()
        module = BarrierContactModule(project_hessian_to_psd=True)
        cs = module.construct_constraint_set(pos, edges, faces, DHAT2)
        H = module.compute_barrier_potential_hessian(pos, pos, edges, faces, cs, DHAT2)
        assert np.linalg.eigvalsh(H.toarray()).min() >= -1e-8

    def test_invalid_tolerance(self):
        with pytest.raises(ValueError):
            BarrierContactModule(ccd_tolerance=0.0)
