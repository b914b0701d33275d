from __future__ import annotations

import io

import numpy as np
import pytest

from detfci import FCIConfig, FCISolver, Integrals, PrintObserver, SymmetryTable, load_fcidump
from detfci.config import auto_num_threads
from detfci.integrals import restore_eri1
from detfci.linalg import BlasLinAlg, NumpyLinAlg, get_linalg
from fci_models import make_solver, random_integrals


@pytest.mark.parametrize(
    "changes",
    [
        {"max_memory_mb": 0.0},
        {"nthreads": 0},
        {"davidson_max_space": 1},
        {"davidson_num_keep": 32},
        {"rtol_base": -1.0},
        {"cg_max_cycle": 0},
        {"max_norb": 63},
        {"linalg": "cupy"},
    ],
)
def test_config_validation(changes):
    with pytest.raises(ValueError):
        FCIConfig(**changes)


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("DETFCI_MAX_MEMORY_MB", "12.5")
    monkeypatch.setenv("DETFCI_NUM_THREADS", "3")
    monkeypatch.setenv("DETFCI_VERBOSE", "2")
    monkeypatch.delenv("DETFCI_CG_MAX_CYCLE", raising=False)
    cfg = FCIConfig.from_env(seed=4)
    assert cfg.max_memory_mb == 12.5
    assert cfg.nthreads == 3
    assert cfg.verbose == 2
    assert cfg.seed == 4
    assert cfg.replace(verbose=0).verbose == 0
    with pytest.raises(ValueError):
        FCIConfig.from_env(not_a_field=1)

    monkeypatch.setenv("DETFCI_VERBOSE", "loud")
    with pytest.raises(ValueError):
        FCIConfig.from_env()


def test_auto_num_threads(monkeypatch):
    monkeypatch.delenv("DETFCI_NUM_THREADS", raising=False)
    monkeypatch.setenv("OMP_NUM_THREADS", "5")
    assert auto_num_threads() == 5
    monkeypatch.setenv("OMP_NUM_THREADS", "bogus")
    assert auto_num_threads() == 1


def test_linalg_backends_agree():
    rng = np.random.default_rng(0)
    x = rng.normal(size=50)
    y = rng.normal(size=50)
    a = rng.normal(size=(7, 50))
    b = rng.normal(size=(9, 50))
    npy = get_linalg("numpy")
    blas = get_linalg("blas")
    assert isinstance(npy, NumpyLinAlg) and isinstance(blas, BlasLinAlg)
    assert get_linalg(blas) is blas
    with pytest.raises(ValueError):
        get_linalg("cupy")

    assert blas.dot(x, y) == pytest.approx(npy.dot(x, y))
    assert blas.norm(x) == pytest.approx(np.linalg.norm(x))
    y1, y2 = y.copy(), y.copy()
    npy.axpy(0.3, x, y1)
    blas.axpy(0.3, x, y2)
    assert np.allclose(y1, y2)
    npy.scal(-2.0, y1)
    blas.scal(-2.0, y2)
    assert np.allclose(y1, y2)
    dst = np.zeros(50)
    blas.copy(x, dst)
    assert np.array_equal(dst, x)
    assert np.allclose(blas.gemm(a, b, trans_b=True), npy.gemm(a, b, trans_b=True))
    assert np.allclose(blas.gemm(a, a, alpha=0.5, trans_a=True), 0.5 * a.T @ a)

    z = npy.zeros(8)
    npy.fill_random(z, np.random.default_rng(1))
    assert np.all((z >= -1.0) & (z < 1.0))
    blas.fill_zero(z)
    assert not np.any(z)


def test_solver_preconditions():
    ints = random_integrals(3, orbsym=[0, 1, 0], seed=0)
    with pytest.raises(ValueError):
        FCISolver(ints, 4, 0, 0, config=FCIConfig())
    with pytest.raises(ValueError):
        FCISolver(ints, 1, 1, 2, config=FCIConfig())
    with pytest.raises(ValueError):
        FCISolver(ints, 1, 1, 0, config=FCIConfig(max_norb=2))
    solver = FCISolver(ints, 1, 1, 1, config=FCIConfig())
    with pytest.raises(ValueError):
        solver.vec_length(2)
    assert solver.vec_length(0) + solver.vec_length(1) == 9


def test_solver_accessors_and_flags():
    ints = random_integrals(3, seed=2, ecore=1.25)
    out = io.StringIO()
    with make_solver(ints, 2, 1, verbose=2, nthreads=2) as solver:
        assert solver.econst == 1.25
        assert solver.nelec == 3
        assert solver.get_gmat(0, 1) == pytest.approx(ints.gmat()[0, 1])
        assert solver.get_eri(0, 1, 2, 0) == ints.eri[0, 1, 2, 0]
        assert solver.dump_flags(out=out) is solver
        x = solver.random(seed=0)
        y = solver.copy(x)
        solver.axpy(1.0, x, y)
        solver.scale(0.5, y)
        assert np.allclose(y, x)
        assert solver.norm(x) == pytest.approx(np.linalg.norm(x))
        assert not np.any(solver.zeros())
    text = out.getvalue()
    assert "max_memory_mb = " in text
    assert "vec_length = 9" in text


def test_print_observer_output():
    out = io.StringIO()
    ints = random_integrals(3, seed=1)
    solver = FCISolver(ints, 1, 1, 0, config=FCIConfig(seed=0), observer=PrintObserver(verbose=2, out=out))
    solver.gs_davidson()
    text = out.getvalue()
    assert "Number of variables in the FCI vector = 9" in text
    assert "ground state energy" in text


def test_integrals_conventions():
    ints = random_integrals(3, seed=6)
    phys = Integrals.from_physicist(ints.tmat, ints.vmat, ecore=ints.ecore)
    assert np.allclose(phys.eri, ints.eri)
    assert ints.get_vmat(0, 1, 2, 0) == ints.eri[0, 2, 1, 0]
    assert ints.get_tmat(2, 1) == ints.tmat[2, 1]
    expected = ints.tmat - 0.5 * np.einsum("ikkj->ij", ints.eri)
    assert np.allclose(ints.gmat(), expected)

    npair = 6
    pair = np.zeros((npair, npair))
    rows, cols = np.tril_indices(3)
    for a, (i, j) in enumerate(zip(rows, cols)):
        for b, (k, l) in enumerate(zip(rows, cols)):
            pair[a, b] = ints.eri[i, j, k, l]
    assert np.allclose(restore_eri1(pair, 3), ints.eri)
    assert np.allclose(restore_eri1(pair[np.tril_indices(npair)], 3), ints.eri)

    with pytest.raises(ValueError):
        Integrals(np.zeros((2, 3)), np.zeros((2,) * 4))
    with pytest.raises(ValueError):
        Integrals(np.zeros((2, 2)), np.zeros((2,) * 4), orbsym=[0])
    with pytest.raises(ValueError):
        Integrals(np.zeros((2, 2)), np.zeros((2,) * 4), notation="dirac")


def test_symmetry_table_validation():
    sym = SymmetryTable([0, 3, 1], group="d2h")
    assert sym.nirrep == 8
    assert sym.irrep_of_orbitals([1, 2]) == 2
    assert sym.pair_irrep(1, 2) == 2
    assert sym.product(5, 3) == 6
    with pytest.raises(ValueError):
        SymmetryTable([0, 4], group="c2v")
    with pytest.raises(ValueError):
        SymmetryTable([0], nirrep=3)
    with pytest.raises(ValueError):
        SymmetryTable([0], group="c3v")


def test_fcidump_round_trip(tmp_path):
    pytest.importorskip("pyscf")
    from pyscf.tools import fcidump

    ints = random_integrals(4, seed=10, ecore=0.8)
    path = tmp_path / "FCIDUMP"
    fcidump.from_integrals(str(path), ints.tmat, ints.eri, 4, 3, nuc=ints.ecore, ms=1)

    loaded, nelec, wfnsym = load_fcidump(str(path))
    assert nelec == (2, 1)
    assert wfnsym == 0
    assert loaded.ecore == pytest.approx(0.8)
    assert np.allclose(loaded.tmat, ints.tmat, atol=1e-12)
    assert np.allclose(loaded.eri, ints.eri, atol=1e-12)

    ref = make_solver(ints, 2, 1).gs_davidson().energy
    assert make_solver(loaded, *nelec, wfnsym).gs_davidson().energy == pytest.approx(ref, abs=1e-8)


def test_chunked_parallel_for():
    from concurrent.futures import ThreadPoolExecutor

    from detfci.threads import blas_thread_limit, run_chunked, split_chunks

    assert split_chunks(10, 3) == [(0, 3), (3, 6), (6, 10)]
    assert split_chunks(2, 4) == [(0, 1), (1, 2)]
    with pytest.raises(ValueError):
        split_chunks(5, 0)
    with ThreadPoolExecutor(max_workers=3) as pool:
        parts = run_chunked(lambda a, b: list(range(a, b)), 0, 11, executor=pool, nthreads=3)
    assert [v for part in parts for v in part] == list(range(11))
    assert run_chunked(lambda a, b: (a, b), 2, 7, executor=None, nthreads=4) == [(2, 7)]
    with blas_thread_limit(1):
        pass
    with pytest.raises(ValueError):
        with blas_thread_limit(0):
            pass
