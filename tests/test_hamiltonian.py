from __future__ import annotations

import tracemalloc

import numpy as np
import pytest

from fci_models import make_solver, random_integrals, reference_hamiltonian

C2V_ORBSYM = [0, 1, 2, 3, 0]


def test_matvec_matches_reference_c1():
    ints = random_integrals(4, seed=3)
    solver = make_solver(ints, 2, 2)
    assert solver.vec_length() == 36
    ham = solver.dense_hamiltonian()
    ref = reference_hamiltonian(solver)
    assert np.allclose(ham, ref, atol=1e-12)


@pytest.mark.parametrize("target", [0, 1, 2, 3])
def test_matvec_matches_reference_c2v(target):
    ints = random_integrals(5, orbsym=C2V_ORBSYM, seed=11)
    solver = make_solver(ints, 2, 2, target)
    ham = solver.dense_hamiltonian()
    ref = reference_hamiltonian(solver)
    assert np.allclose(ham, ref, atol=1e-12)


def test_hamiltonian_is_symmetric():
    ints = random_integrals(5, seed=5)
    solver = make_solver(ints, 3, 2)
    ham = solver.dense_hamiltonian()
    assert np.allclose(ham, ham.T, atol=1e-12)


def test_product_independent_of_tiles_threads_and_backend():
    ints = random_integrals(5, orbsym=C2V_ORBSYM, seed=2)
    base = make_solver(ints, 3, 2, 1)
    x = base.random(seed=7)
    ref = base.ham_times_vec(x)
    assert base.addressing.workspace_size == base.addressing.workspace_full

    for config in (
        {"max_memory_mb": 1e-4},
        {"max_memory_mb": 1e-4, "nthreads": 3},
        {"nthreads": 2, "linalg": "blas"},
    ):
        other = make_solver(ints, 3, 2, 1, **config)
        try:
            assert np.allclose(other.ham_times_vec(x), ref, atol=1e-12)
        finally:
            other.close()
    small = make_solver(ints, 3, 2, 1, max_memory_mb=1e-4)
    assert small.addressing.workspace_size < small.addressing.workspace_full


def test_tiny_budget_with_wide_center_c1():
    # 15 pairs in the single center; the budget holds fewer elements than one row
    ints = random_integrals(5, seed=17)
    base = make_solver(ints, 2, 2)
    x = base.random(seed=3)
    ref = base.ham_times_vec(x)
    for config in ({"max_memory_mb": 1e-4}, {"max_memory_mb": 1e-4, "nthreads": 2}):
        small = make_solver(ints, 2, 2, **config)
        try:
            assert small.addressing.workspace_size >= 15
            assert small.addressing.tile_rows(0) == 1
            assert np.allclose(small.ham_times_vec(x), ref, atol=1e-12)
        finally:
            small.close()


def test_product_scratch_stays_within_budget():
    budget_mb = 0.05
    solver = make_solver(random_integrals(8, seed=4), 4, 4, max_memory_mb=budget_mb)
    x = solver.random(seed=0)
    out = solver.zeros()
    assert x.nbytes > budget_mb * 1e6 / 2
    solver.ham_times_vec(x, out=out)
    expected = out.copy()

    tracemalloc.start()
    try:
        solver.ham_times_vec(x, out=out)
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()
    assert peak < 2 * budget_mb * 1e6
    assert np.allclose(out, expected, atol=1e-12)


def test_matvec_rejects_aliased_output():
    solver = make_solver(random_integrals(4, seed=1), 2, 1)
    x = solver.random(seed=1)
    with pytest.raises(ValueError):
        solver.ham_times_vec(x, out=x)


def test_matvec_rejects_wrong_length():
    solver = make_solver(random_integrals(4, seed=1), 2, 1)
    with pytest.raises(ValueError):
        solver.ham_times_vec(np.zeros(solver.vec_length() + 1))


def test_out_buffer_is_filled():
    solver = make_solver(random_integrals(4, seed=1), 2, 1)
    x = solver.random(seed=1)
    out = np.full(solver.vec_length(), 123.0)
    res = solver.ham_times_vec(x, out=out)
    assert np.allclose(out, solver.dense_hamiltonian() @ x, atol=1e-12)
    assert np.allclose(res, out)


def test_diagonals_and_matrix_elements():
    ints = random_integrals(5, orbsym=C2V_ORBSYM, seed=13)
    solver = make_solver(ints, 2, 3, 2)
    ham = solver.dense_hamiltonian()
    assert np.allclose(solver.diag_ham(), np.diag(ham), atol=1e-12)
    assert np.allclose(solver.diag_ham_squared(), np.diag(ham @ ham), atol=1e-10)
    assert solver.lowest_energy_determinant() == int(np.argmin(np.diag(ham)))

    n = solver.vec_length()
    for row in range(n):
        bra = solver.bits_of_counter(0, row)
        for col in range(n):
            ket = solver.bits_of_counter(0, col)
            assert solver.get_matrix_element(*bra, *ket) == pytest.approx(ham[row, col], abs=1e-12)


def test_check_hamiltonian_reports_small_deviations():
    solver = make_solver(random_integrals(4, seed=8), 2, 2)
    report = solver.check_hamiltonian()
    assert set(report) == {"diag", "matrix_elements", "diag_squared"}
    assert max(report.values()) < 1e-10


def test_matrix_element_beyond_double_excitation_vanishes():
    solver = make_solver(random_integrals(6, seed=4), 3, 0)
    bra = (np.array([1, 1, 1, 0, 0, 0]), np.zeros(6, dtype=np.int64))
    ket = (np.array([0, 0, 0, 1, 1, 1]), np.zeros(6, dtype=np.int64))
    assert solver.get_matrix_element(*bra, *ket) == 0.0


def test_apply_excitation_adjoint_across_sectors():
    ints = random_integrals(5, orbsym=C2V_ORBSYM, seed=21)
    solver = make_solver(ints, 2, 2, 0)
    x = solver.random(seed=3)
    rng = np.random.default_rng(4)
    table = solver.symmetry.table
    orbsym = solver.symmetry.orbsym
    for p in range(solver.norb):
        for q in range(solver.norb):
            sector = int(table[table[orbsym[p], orbsym[q]], 0])
            y = rng.uniform(-1.0, 1.0, size=solver.addressing.vec_length(sector))
            lhs = float(np.dot(y, solver.apply_excitation(x, p, q, 0)))
            rhs = float(np.dot(solver.apply_excitation(y, q, p, sector), x))
            assert lhs == pytest.approx(rhs, abs=1e-12)


def test_number_operator_through_excitations():
    solver = make_solver(random_integrals(4, seed=6), 2, 1)
    x = solver.random(seed=2)
    occ_up, occ_down = solver.occupations()
    for i in range(solver.norb):
        n_i = occ_up[:, i].astype(float) + occ_down[:, i]
        once = solver.apply_excitation(x, i, i, 0)
        assert np.allclose(once, n_i * x)
        assert np.allclose(solver.act_with_number_operator(i, x), once)
        assert np.allclose(solver.apply_excitation(once, i, i, 0), n_i * n_i * x)


def test_fci_coeff_and_bits_of_counter():
    ints = random_integrals(5, orbsym=C2V_ORBSYM, seed=9)
    solver = make_solver(ints, 2, 2, 3)
    x = solver.random(seed=5)
    for idx in range(solver.vec_length()):
        up, down = solver.bits_of_counter(0, idx)
        assert solver.fci_coeff(up, down, x) == x[idx]

    # both strings in irrep 0 -> product irrep 0 differs from the target
    up = np.array([1, 0, 0, 0, 1])
    down = np.array([1, 0, 0, 0, 1])
    assert solver.fci_coeff(up, down, x) == 0.0
    # wrong electron count
    assert solver.fci_coeff(np.array([1, 1, 1, 0, 0]), down, x) == 0.0
