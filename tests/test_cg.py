from __future__ import annotations

import numpy as np
import pytest

from detfci import FCIConfig, FCISolver, RecordingObserver
from detfci.cg import alpha_plus_beta_ham, diag_preconditioner
from fci_models import make_solver, random_integrals


def _dense_solve(solver, alpha, beta, eta, rhs):
    n = solver.vec_length()
    ham = solver.dense_hamiltonian() + solver.econst * np.eye(n)
    mat = alpha * np.eye(n) + beta * ham + 1j * eta * np.eye(n)
    return np.linalg.solve(mat, rhs.astype(np.complex128))


@pytest.mark.parametrize("alpha, beta, eta", [(0.3, 1.0, 1.0), (-1.5, -1.0, 1.0)])
def test_cg_matches_dense_solve(alpha, beta, eta):
    solver = make_solver(random_integrals(4, orbsym=[0, 1, 1, 0], seed=7), 2, 1, 1)
    rhs = solver.random(seed=2)
    res = solver.cg_solve_system(alpha, beta, eta, rhs, check_error=True)
    ref = _dense_solve(solver, alpha, beta, eta, rhs)
    assert np.allclose(res.solution, ref, atol=5e-5)
    assert res.residual is not None and res.residual < 1e-5
    assert res.niter_imag >= 1


def test_alpha_plus_beta_ham_includes_constant():
    solver = make_solver(random_integrals(3, seed=1), 1, 1)
    x = solver.random(seed=0)
    expected = 0.5 * x + 2.0 * (solver.dense_hamiltonian() @ x + solver.econst * x)
    assert np.allclose(alpha_plus_beta_ham(solver, 0.5, 2.0, x), expected, atol=1e-12)


def test_preconditioner_is_inverse_sqrt_of_squared_diagonal():
    solver = make_solver(random_integrals(4, seed=3), 2, 1)
    alpha, beta, eta = 0.2, -1.0, 0.5
    n = solver.vec_length()
    op = alpha * np.eye(n) + beta * (solver.dense_hamiltonian() + solver.econst * np.eye(n))
    diag = np.diag(op @ op) + eta * eta
    assert np.allclose(diag_preconditioner(solver, alpha, beta, eta), 1.0 / np.sqrt(diag), atol=1e-12)


def test_cg_rejects_zero_eta_and_wrong_length():
    solver = make_solver(random_integrals(3, seed=1), 1, 1)
    with pytest.raises(ValueError):
        solver.cg_solve_system(0.1, 1.0, 0.0, solver.random(seed=0))
    with pytest.raises(ValueError):
        solver.cg_solve_system(0.1, 1.0, 0.1, np.ones(solver.vec_length() + 2))


def test_cg_cycle_cap_raises():
    ints = random_integrals(4, seed=9)
    solver = FCISolver(ints, 2, 2, 0, config=FCIConfig(cg_max_cycle=1))
    with pytest.raises(RuntimeError):
        solver.cg_solve_system(0.1, 1.0, 0.05, solver.random(seed=4))


def test_cg_reports_to_observer():
    observer = RecordingObserver()
    solver = FCISolver(random_integrals(3, seed=2), 1, 1, 0, config=FCIConfig(), observer=observer)
    solver.cg_solve_system(0.1, 1.0, 0.5, solver.random(seed=1))
    names = observer.names()
    assert "CGDiagPrecond" in names
    assert "cg_done" in names
    assert "cg_step" in names


def test_cg_direct_residual():
    solver = make_solver(random_integrals(4, seed=14), 2, 2)
    rhs = solver.random(seed=6)
    alpha, beta, eta = 0.0, -1.0, 0.5
    res = solver.cg_solve_system(alpha, beta, eta, rhs)
    real_part = alpha_plus_beta_ham(solver, alpha, beta, res.real) - eta * res.imag
    imag_part = alpha_plus_beta_ham(solver, alpha, beta, res.imag) + eta * res.real
    residual = np.sqrt(np.sum((real_part - rhs) ** 2) + np.sum(imag_part ** 2))
    assert residual < 1e-5 * np.linalg.norm(rhs)
