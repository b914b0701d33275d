from __future__ import annotations

import itertools

import numpy as np
import pytest

from detfci.rdm import energy_from_2rdm, one_rdm_from_two
from fci_models import hubbard_dimer, make_solver, random_integrals

C2V_ORBSYM = [0, 1, 2, 3, 0]


def _normalized(solver, seed):
    x = solver.random(seed=seed)
    return x / np.linalg.norm(x)


def _expectation(solver, x):
    return float(x @ solver.ham_times_vec(x)) + solver.econst


def test_2rdm_energy_two_orbitals():
    solver = make_solver(random_integrals(2, seed=1), 1, 1)
    x = _normalized(solver, 3)
    two_rdm, energy = solver.fill_2rdm(x)
    assert energy == pytest.approx(_expectation(solver, x), abs=1e-10)
    assert np.einsum("ijij->", two_rdm) == pytest.approx(2.0, abs=1e-12)


@pytest.mark.parametrize("target", [0, 2])
def test_2rdm_energy_and_symmetry_c2v(target):
    solver = make_solver(random_integrals(5, orbsym=C2V_ORBSYM, seed=4), 2, 2, target)
    x = _normalized(solver, 8)
    two_rdm, energy = solver.fill_2rdm(x)
    assert energy == pytest.approx(_expectation(solver, x), abs=1e-10)
    assert np.allclose(two_rdm, two_rdm.transpose(1, 0, 3, 2), atol=1e-12)
    assert np.allclose(two_rdm, two_rdm.transpose(2, 3, 0, 1), atol=1e-12)
    assert np.allclose(two_rdm, two_rdm.transpose(3, 2, 1, 0), atol=1e-12)

    nelec = 4
    one = one_rdm_from_two(two_rdm, nelec)
    assert np.trace(one) == pytest.approx(nelec, abs=1e-10)
    occ_up, occ_down = solver.occupations()
    dens = (occ_up + occ_down).astype(float)
    assert np.allclose(np.diag(one), (x * x) @ dens, atol=1e-10)
    assert energy_from_2rdm(two_rdm, solver.gmat, solver.eri, solver.econst, nelec) == pytest.approx(energy)


def test_2rdm_matches_explicit_pair_products():
    solver = make_solver(random_integrals(4, seed=12), 2, 1)
    x = _normalized(solver, 1)
    two_rdm, _ = solver.fill_2rdm(x)
    norb = solver.norb
    for i, j, k, l in itertools.product(range(norb), repeat=4):
        # Gamma_ijkl = <E_ik E_jl> - delta_jk <E_il>
        value = float(x @ solver.apply_excitation(solver.apply_excitation(x, j, l, 0), i, k, 0))
        if j == k:
            value -= float(x @ solver.apply_excitation(x, i, l, 0))
        assert two_rdm[i, j, k, l] == pytest.approx(value, abs=1e-12)


def test_2rdm_requires_two_electrons():
    solver = make_solver(random_integrals(3, seed=0), 1, 0)
    with pytest.raises(ValueError):
        solver.fill_2rdm(solver.random(seed=0))


def test_3rdm_symmetry_and_partial_trace():
    solver = make_solver(random_integrals(4, orbsym=[0, 1, 1, 0], seed=5), 2, 1, 1)
    x = _normalized(solver, 6)
    three = solver.fill_3rdm(x)
    two_rdm, _ = solver.fill_2rdm(x)
    nelec = 3

    perms = [
        (1, 0, 2, 4, 3, 5),
        (2, 1, 0, 5, 4, 3),
        (0, 2, 1, 3, 5, 4),
        (1, 2, 0, 4, 5, 3),
        (3, 4, 5, 0, 1, 2),
    ]
    for perm in perms:
        assert np.allclose(three, three.transpose(perm), atol=1e-12)
    assert np.einsum("ijkijk->", three) == pytest.approx(nelec * (nelec - 1) * (nelec - 2), abs=1e-10)
    assert np.allclose(np.einsum("ijklmk->ijlm", three), (nelec - 2) * two_rdm, atol=1e-10)


def test_3rdm_requires_three_electrons():
    solver = make_solver(random_integrals(3, seed=0), 1, 1)
    with pytest.raises(ValueError):
        solver.fill_3rdm(solver.random(seed=0))


def test_spin_squared_singlet_ground_state():
    solver = make_solver(hubbard_dimer(), 1, 1)
    res = solver.gs_davidson()
    assert solver.calc_spin_squared(res.vector) == pytest.approx(0.0, abs=1e-10)


def test_spin_squared_of_symmetric_coefficients():
    solver = make_solver(random_integrals(4, seed=3), 1, 1)
    rng = np.random.default_rng(0)
    coeff = rng.normal(size=(4, 4))
    # x[cnt_up + 4 * cnt_down] = C[cnt_down, cnt_up]; a symmetric C is a singlet
    coeff = coeff + coeff.T
    x = coeff.ravel()
    x /= np.linalg.norm(x)
    assert solver.calc_spin_squared(x) == pytest.approx(0.0, abs=1e-10)
    antisym = rng.normal(size=(4, 4))
    antisym = antisym - antisym.T
    y = antisym.ravel() / np.linalg.norm(antisym)
    assert solver.calc_spin_squared(y) == pytest.approx(2.0, abs=1e-10)


def test_spin_squared_high_spin_determinant():
    solver = make_solver(random_integrals(2, seed=0), 2, 0)
    assert solver.vec_length() == 1
    assert solver.calc_spin_squared(np.ones(1)) == pytest.approx(2.0, abs=1e-12)
