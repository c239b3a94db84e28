import numpy as np
import pytest
from scipy.optimize import nnls

from ncpkit.decomposition import nnls as nnls_solvers
from ncpkit.decomposition.nnls import (
    EPS, HALS, MultiplicativeUpdate, ScaledADMM, get_nnls_solver, subproblem_loss
)

from .test_utils import inner_iteration_losses

ALL_SOLVERS = [HALS, ScaledADMM, MultiplicativeUpdate]


@pytest.fixture
def nnls_problem():
    rng = np.random.RandomState(0)
    W = rng.uniform(size=(20, 4))
    V = rng.uniform(size=(20, 15))
    H = rng.uniform(size=(4, 15))
    return W, V, H


@pytest.fixture
def normal_equations(nnls_problem):
    W, V, H = nnls_problem
    return W.T @ V, W.T @ W, H


def nnls_solution(W, V):
    return np.stack([nnls(W, v)[0] for v in V.T], axis=1)


@pytest.mark.parametrize('Solver', ALL_SOLVERS)
class TestAllSolvers:
    def test_output_is_nonnegative(self, Solver, normal_equations):
        WtV, WtW, H = normal_equations
        solver = Solver(max_its=10)
        for penalties in [{}, {'ridge': 0.5}, {'sparsity': 0.5}]:
            H_new, _, num_its = solver.solve(WtV, WtW, H, **penalties)

            assert H_new.shape == H.shape
            assert np.all(H_new >= 0)
            assert 1 <= num_its <= 10

    def test_output_is_nonnegative_with_single_iteration(self, Solver, normal_equations):
        WtV, WtW, H = normal_equations
        H_new, _, num_its = Solver(max_its=1).solve(WtV, WtW, H, sparsity=1)

        assert num_its == 1
        assert np.all(H_new >= 0)

    def test_zero_iterations_returns_input(self, Solver, normal_equations):
        WtV, WtW, H = normal_equations
        solver = Solver(max_its=0)
        state = solver.init_state(H)
        H_new, new_state, num_its = solver.solve(WtV, WtW, H, state)

        assert num_its == 0
        assert H_new is not H
        assert np.array_equal(H_new, H)
        if state is None:
            assert new_state is None
        else:
            assert np.array_equal(new_state, state)

    def test_inputs_are_not_modified(self, Solver, normal_equations):
        WtV, WtW, H = normal_equations
        copies = [WtV.copy(), WtW.copy(), H.copy()]
        Solver(max_its=5).solve(WtV, WtW, H, sparsity=0.1, ridge=0.1)

        for original, copy in zip([WtV, WtW, H], copies):
            assert np.array_equal(original, copy)

    def test_loss_decreases(self, Solver, normal_equations):
        WtV, WtW, H = normal_equations
        H_new, _, _ = Solver(max_its=50, tol=1e-8).solve(WtV, WtW, H)
        assert subproblem_loss(WtV, WtW, H_new) < subproblem_loss(WtV, WtW, H)

    def test_negative_penalties_fail(self, Solver, normal_equations):
        WtV, WtW, H = normal_equations
        with pytest.raises(ValueError):
            Solver().solve(WtV, WtW, H, ridge=-1)
        with pytest.raises(ValueError):
            Solver().solve(WtV, WtW, H, sparsity=-1)

    def test_negative_max_its_fails(self, Solver):
        with pytest.raises(ValueError):
            Solver(max_its=-1)


@pytest.mark.parametrize('Solver', [HALS, MultiplicativeUpdate])
def test_inner_iterations_are_monotone(Solver, normal_equations):
    WtV, WtW, H = normal_equations
    losses = inner_iteration_losses(Solver, WtV, WtW, H, num_its=20)

    assert np.all(np.diff(losses) <= 1e-10*np.abs(losses[:-1]) + 1e-12)


@pytest.mark.parametrize('Solver', ALL_SOLVERS)
def test_loose_tolerance_stops_early(Solver, normal_equations):
    WtV, WtW, H = normal_equations
    # The dual variable of ADMM stays zero unless some constraint or penalty is active
    _, _, num_its = Solver(max_its=100, tol=1e10).solve(WtV, WtW, H, sparsity=0.1)
    assert num_its == 1


@pytest.mark.parametrize('Solver', [HALS, ScaledADMM])
def test_converges_to_nnls_solution(Solver, nnls_problem):
    W, V, H = nnls_problem
    WtV, WtW = W.T @ V, W.T @ W
    H_new, _, _ = Solver(max_its=5000, tol=1e-12).solve(WtV, WtW, H)

    optimal_loss = subproblem_loss(WtV, WtW, nnls_solution(W, V))
    assert subproblem_loss(WtV, WtW, H_new) <= optimal_loss + 1e-6*abs(optimal_loss)


def test_get_nnls_solver():
    assert isinstance(get_nnls_solver('admm'), ScaledADMM)
    assert isinstance(get_nnls_solver('HALS'), HALS)
    assert isinstance(get_nnls_solver('mu', max_its=3), MultiplicativeUpdate)
    assert get_nnls_solver('mu', max_its=3).max_its == 3

    solver = HALS(max_its=2)
    assert get_nnls_solver(solver) is solver

    with pytest.raises(ValueError):
        get_nnls_solver('projected_gradient')
    with pytest.raises(ValueError):
        get_nnls_solver(None)


class TestHALS:
    def test_rows_are_updated_gauss_seidel(self, normal_equations):
        WtV, WtW, H = normal_equations
        H_new, _, _ = HALS(max_its=1).solve(WtV, WtW, H)

        expected = H.copy()
        for r in range(len(expected)):
            expected[r] = np.maximum(
                expected[r] + (WtV[r] - WtW[r] @ expected) / WtW[r, r], 0
            )
        assert np.allclose(H_new, expected)

    def test_ridge_damps_the_update(self, normal_equations):
        WtV, WtW, H = normal_equations
        H_new, _, _ = HALS(max_its=1).solve(WtV, WtW, H, ridge=2.0)

        expected_first_row = np.maximum(H[0] + (WtV[0] - WtW[0] @ H) / (WtW[0, 0] + 2.0), 0)
        assert np.allclose(H_new[0], expected_first_row)

    def test_eps_floor_in_early_outer_iterations(self, normal_equations):
        WtV, WtW, H = normal_equations
        sparsity = 10*np.abs(WtV).max()

        for outer_iteration in range(1, 6):
            H_new, _, _ = HALS(max_its=3).solve(
                WtV, WtW, H, sparsity=sparsity, outer_iteration=outer_iteration
            )
            assert np.all(H_new == EPS)

    def test_zero_floor_in_later_outer_iterations(self, normal_equations):
        WtV, WtW, H = normal_equations
        sparsity = 10*np.abs(WtV).max()

        for outer_iteration in [6, 7, None]:
            H_new, _, _ = HALS(max_its=3).solve(
                WtV, WtW, H, sparsity=sparsity, outer_iteration=outer_iteration
            )
            assert np.all(H_new == 0)

    def test_has_no_state(self, normal_equations):
        WtV, WtW, H = normal_equations
        solver = HALS()
        assert solver.init_state(H) is None
        assert solver.solve(WtV, WtW, H)[1] is None


class TestScaledADMM:
    def test_initial_state_is_zero(self, normal_equations):
        _, _, H = normal_equations
        state = ScaledADMM().init_state(H)

        assert state.shape == H.shape
        assert np.all(state == 0)

    def test_missing_state_is_zero_state(self, normal_equations):
        WtV, WtW, H = normal_equations
        solver = ScaledADMM(max_its=3, tol=-1)
        H1, dual1, _ = solver.solve(WtV, WtW, H)
        H2, dual2, _ = solver.solve(WtV, WtW, H, np.zeros_like(H))

        assert np.allclose(H1, H2)
        assert np.allclose(dual1, dual2)

    def test_cholesky_is_factorised_once_per_call(self, normal_equations, monkeypatch):
        WtV, WtW, H = normal_equations
        num_factorisations = 0
        cho_factor = nnls_solvers.sla.cho_factor

        def counting_cho_factor(*args, **kwargs):
            nonlocal num_factorisations
            num_factorisations += 1
            return cho_factor(*args, **kwargs)

        monkeypatch.setattr(nnls_solvers.sla, 'cho_factor', counting_cho_factor)
        _, _, num_its = ScaledADMM(max_its=10, tol=-1).solve(WtV, WtW, H)

        assert num_its == 10
        assert num_factorisations == 1

    def test_rho_is_floored(self):
        solver = ScaledADMM()
        assert solver.get_rho(np.zeros((3, 3))) == solver.min_rho
        assert solver.get_rho(np.diag([1.0, 2.0, 3.0])) == pytest.approx(2.0)

    def test_zero_gram_matrix_does_not_fail(self, normal_equations):
        _, _, H = normal_equations
        rank = H.shape[0]
        H_new, dual, _ = ScaledADMM().solve(np.zeros_like(H), np.zeros((rank, rank)), H)

        assert np.all(np.isfinite(H_new))
        assert np.all(np.isfinite(dual))
        assert np.all(H_new >= 0)

    def test_large_sparsity_gives_zero_solution(self, normal_equations):
        WtV, WtW, H = normal_equations
        H_new, _, _ = ScaledADMM(max_its=5).solve(WtV, WtW, H, sparsity=1e6*np.abs(WtV).max())
        assert np.all(H_new == 0)

    def test_sparsity_increases_number_of_zeros(self, normal_equations):
        WtV, WtW, H = normal_equations
        solver = ScaledADMM(max_its=500, tol=1e-10)
        H_dense, _, _ = solver.solve(WtV, WtW, H)
        H_sparse, _, _ = solver.solve(WtV, WtW, H, sparsity=0.5*np.abs(WtV).max())

        assert np.sum(H_sparse == 0) > np.sum(H_dense == 0)

    def test_ridge_shrinks_solution(self, normal_equations):
        WtV, WtW, H = normal_equations
        solver = ScaledADMM(max_its=500, tol=1e-10)
        H_plain, _, _ = solver.solve(WtV, WtW, H)
        H_ridge, _, _ = solver.solve(WtV, WtW, H, ridge=10*np.trace(WtW))

        assert np.linalg.norm(H_ridge) < np.linalg.norm(H_plain)


class TestMultiplicativeUpdate:
    def test_zero_denominator_is_guarded(self, normal_equations):
        _, _, H = normal_equations
        rank = H.shape[0]
        H_new, _, _ = MultiplicativeUpdate().solve(np.zeros_like(H), np.zeros((rank, rank)), H)

        assert np.all(np.isfinite(H_new))
        assert np.allclose(H_new, H)

    def test_sparsity_replaces_eps_in_denominator(self, normal_equations):
        WtV, WtW, H = normal_equations
        sparsity = 0.3
        H_new, _, _ = MultiplicativeUpdate(max_its=1).solve(WtV, WtW, H, sparsity=sparsity)

        expected = H * (WtV + EPS) / (WtW @ H + sparsity)
        assert np.allclose(H_new, expected)

    def test_zero_entries_stay_zero(self, normal_equations):
        WtV, WtW, H = normal_equations
        H = H.copy()
        H[1, 3] = 0
        H_new, _, _ = MultiplicativeUpdate(max_its=10).solve(WtV, WtW, H)

        assert H_new[1, 3] == 0
