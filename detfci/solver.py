from __future__ import annotations

from dataclasses import dataclass
import math
import sys
from typing import Any, Sequence

import numpy as np

from detfci import cg as _cg
from detfci import diagonal as _diagonal
from detfci import greens as _greens
from detfci import rdm as _rdm
from detfci.addressing import SectorAddressing
from detfci.config import FCIConfig
from detfci.davidson import davidson1_result
from detfci.enumerator import DeterminantEnumerator, bits_to_string
from detfci.hamiltonian import HamiltonianEngine, HamiltonianWorkspace
from detfci.integrals import Integrals
from detfci.linalg import get_linalg
from detfci.lookup import build_excitation_tables
from detfci.observer import FCIObserver, make_observer


def _rms(diff: np.ndarray) -> float:
    return float(np.sqrt(np.mean(np.square(diff)))) if diff.size else 0.0


@dataclass
class GroundStateResult:
    """Lowest eigenpair of the Hamiltonian in the target sector.

    Attributes
    ----------
    energy : float
        Ground-state energy including the constant term.
    vector : np.ndarray
        Normalized FCI vector.
    converged : bool
        Whether the Davidson residual criterion was met.
    niter : int
        Davidson iterations.
    nmatvec : int
        Hamiltonian-vector products spent.
    """

    energy: float
    vector: np.ndarray
    converged: bool
    niter: int
    nmatvec: int = 0


class FCISolver:
    """Determinant-based FCI solver for fixed ``(nelec_up, nelec_down)`` and target irrep.

    The solver builds the determinant enumerators, the excitation lookup
    tables and the sector addressing once, and exposes the Hamiltonian
    product, diagonal preconditioners, density matrices, the Davidson ground
    state, the shifted CG solver and Green's functions on top of them.

    Parameters
    ----------
    integrals : Integrals
        Orbital integrals and symmetry.
    nelec_up, nelec_down : int
        Electron counts per spin.
    target_irrep : int
        Irrep of the many-electron states.
    config : FCIConfig, optional
        Tunables; defaults to :meth:`FCIConfig.from_env`.
    observer : FCIObserver, optional
        Diagnostics sink; defaults to a printer gated by ``config.verbose``.
    """

    def __init__(
        self,
        integrals: Integrals,
        nelec_up: int,
        nelec_down: int,
        target_irrep: int = 0,
        config: FCIConfig | None = None,
        observer: FCIObserver | None = None,
    ) -> None:
        self.config = FCIConfig.from_env() if config is None else config
        self.observer = make_observer(self.config.verbose) if observer is None else observer
        self.integrals = integrals
        self.symmetry = integrals.symmetry

        norb = int(integrals.norb)
        self.nelec_up = int(nelec_up)
        self.nelec_down = int(nelec_down)
        for name, n in (("nelec_up", self.nelec_up), ("nelec_down", self.nelec_down)):
            if not 0 <= n <= norb:
                raise ValueError(f"{name}={n} must lie in [0, {norb}]")
        self.target_irrep = int(target_irrep)
        if not 0 <= self.target_irrep < int(self.symmetry.nirrep):
            raise ValueError(f"target_irrep={target_irrep} must lie in [0, {self.symmetry.nirrep})")

        cfg = self.config
        self.enum_up = DeterminantEnumerator(self.symmetry, self.nelec_up, max_norb=cfg.max_norb)
        self.enum_down = DeterminantEnumerator(self.symmetry, self.nelec_down, max_norb=cfg.max_norb)
        self.tables_up = build_excitation_tables(self.enum_up)
        self.tables_down = build_excitation_tables(self.enum_down)
        self.addressing = SectorAddressing(
            self.symmetry,
            self.enum_up.num_per_irrep,
            self.enum_down.num_per_irrep,
            self.target_irrep,
            max_memory_mb=cfg.max_memory_mb,
        )

        self.gmat = np.ascontiguousarray(integrals.gmat())
        self.eri = integrals.eri
        self.linalg = get_linalg(cfg.linalg)
        self.workspace = HamiltonianWorkspace(size=self.addressing.workspace_size, nthreads=int(cfg.nthreads))
        self.engine = HamiltonianEngine(
            self.addressing,
            self.tables_up,
            self.tables_down,
            self.gmat,
            self.eri,
            linalg=self.linalg,
            workspace=self.workspace,
            observer=self.observer,
        )
        self._occupations: tuple[np.ndarray, np.ndarray] | None = None

        self.observer.on_startup(
            {
                "norb": norb,
                "nelec_up": self.nelec_up,
                "nelec_down": self.nelec_down,
                "target_irrep": self.target_irrep,
                "vec_length": self.vec_length(),
                "workspace_mb_full": 16.0 * self.addressing.workspace_full / 1e6,
                "workspace_mb": self.workspace.nbytes / 1e6,
                "num_up": self.enum_up.num_per_irrep.tolist(),
                "num_down": self.enum_down.num_per_irrep.tolist(),
                "lookup_mb": (self.tables_up.nbytes + self.tables_down.nbytes) / 1e6,
            }
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self.workspace.shutdown()

    def __enter__(self) -> "FCISolver":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def sibling(
        self, nelec_up: int, nelec_down: int, target_irrep: int, *, integrals: Integrals | None = None
    ) -> "FCISolver":
        """New solver over the same orbitals (and config/observer) for another particle sector."""

        ints = self.integrals if integrals is None else integrals
        if int(ints.norb) != self.norb:
            raise ValueError("sibling integrals must share the orbital basis")
        return FCISolver(ints, nelec_up, nelec_down, target_irrep, config=self.config, observer=self.observer)

    def dump_flags(self, verbose: int | None = None, out=None) -> "FCISolver":
        v = self.config.verbose if verbose is None else int(verbose)
        if v <= 0:
            return self
        out = sys.stdout if out is None else out
        print("FCISolver (Slater determinants)", file=out)
        print(f"norb = {self.norb}  nelec = ({self.nelec_up}, {self.nelec_down})", file=out)
        print(f"target_irrep = {self.target_irrep}  nirrep = {self.nirrep}", file=out)
        print(f"orbsym = {self.symmetry.orbsym.tolist()}", file=out)
        print(f"vec_length = {self.vec_length()}", file=out)
        for k in (
            "max_memory_mb",
            "nthreads",
            "davidson_max_space",
            "davidson_num_keep",
            "davidson_max_cycle",
            "rtol_base",
            "precond_cutoff",
            "cg_max_cycle",
            "linalg",
        ):
            print(f"{k} = {getattr(self.config, k)}", file=out)
        return self

    # ------------------------------------------------------------------
    # Sizes and integrals
    # ------------------------------------------------------------------

    @property
    def norb(self) -> int:
        return int(self.symmetry.norb)

    @property
    def nirrep(self) -> int:
        return int(self.symmetry.nirrep)

    @property
    def nelec(self) -> int:
        return self.nelec_up + self.nelec_down

    @property
    def econst(self) -> float:
        return float(self.integrals.econst)

    def vec_length(self, center: int = 0) -> int:
        """Length of the FCI vector of center irrep ``center`` (sector ``center x target``)."""

        center = int(center)
        if not 0 <= center < self.nirrep:
            raise ValueError(f"center irrep {center} out of range")
        return self.addressing.vec_length(self.addressing.center_target(center))

    def get_gmat(self, i: int, j: int) -> float:
        return float(self.gmat[int(i), int(j)])

    def get_eri(self, i: int, j: int, k: int, l: int) -> float:
        """Chemist-notation ``(ij|kl)``."""

        return float(self.eri[int(i), int(j), int(k), int(l)])

    # ------------------------------------------------------------------
    # Determinants
    # ------------------------------------------------------------------

    def bits_of_counter(self, center: int, index: int) -> tuple[np.ndarray, np.ndarray]:
        """0/1 occupations ``(up, down)`` of element ``index`` of the center's vector."""

        center = int(center)
        if not 0 <= center < self.nirrep:
            raise ValueError(f"center irrep {center} out of range")
        sector = self.addressing.center_target(center)
        g, cnt_up, cnt_down = self.addressing.decode(sector, int(index))
        g = int(g)
        g_down = int(self.symmetry.table[g, sector])
        return self.enum_up.bits(g, int(cnt_up)), self.enum_down.bits(g_down, int(cnt_down))

    def fci_coeff(self, bits_up, bits_down, x: np.ndarray) -> float:
        """Coefficient of the determinant ``(bits_up, bits_down)`` in ``x`` (0 if absent)."""

        x = self.check_vector(x)
        irrep_up, cnt_up = self.enum_up.lookup(bits_to_string(bits_up))
        irrep_down, cnt_down = self.enum_down.lookup(bits_to_string(bits_down))
        if cnt_up < 0 or cnt_down < 0:
            return 0.0
        if int(self.symmetry.table[irrep_up, irrep_down]) != self.target_irrep:
            return 0.0
        jumps = self.addressing.jumps[self.target_irrep]
        return float(x[int(jumps[irrep_up]) + cnt_up + int(self.addressing.num_up[irrep_up]) * cnt_down])

    def occupations(self) -> tuple[np.ndarray, np.ndarray]:
        """Occupation tables ``(n, norb)`` of every element of the target vector."""

        if self._occupations is None:
            occ = _diagonal.sector_occupations(
                self.addressing, self.enum_up, self.enum_down, self.target_irrep, 0, self.vec_length()
            )
            for arr in occ:
                arr.setflags(write=False)
            self._occupations = occ
        return self._occupations

    # ------------------------------------------------------------------
    # Vector utilities
    # ------------------------------------------------------------------

    def check_vector(self, x: Any, center: int = 0) -> np.ndarray:
        v = np.ascontiguousarray(np.asarray(x, dtype=np.float64).ravel())
        n = self.vec_length(center)
        if int(v.size) != n:
            raise ValueError(f"vector has length {v.size}, expected {n}")
        return v

    def zeros(self, center: int = 0) -> np.ndarray:
        return self.linalg.zeros(self.vec_length(center))

    def random(self, seed: int | None = None, center: int = 0) -> np.ndarray:
        """Uniform ``[-1, 1)`` vector from ``seed`` (default ``config.seed``)."""

        x = self.zeros(center)
        rng = np.random.default_rng(self.config.seed if seed is None else seed)
        self.linalg.fill_random(x, rng)
        return x

    def copy(self, x: np.ndarray) -> np.ndarray:
        out = np.empty_like(np.asarray(x, dtype=np.float64))
        self.linalg.copy(x, out)
        return out

    def scale(self, a: float, x: np.ndarray) -> None:
        self.linalg.scal(a, x)

    def axpy(self, a: float, x: np.ndarray, y: np.ndarray) -> None:
        self.linalg.axpy(a, x, y)

    def dot(self, x: np.ndarray, y: np.ndarray) -> float:
        return self.linalg.dot(x, y)

    def norm(self, x: np.ndarray) -> float:
        return self.linalg.norm(x)

    # ------------------------------------------------------------------
    # Hamiltonian
    # ------------------------------------------------------------------

    def ham_times_vec(self, x: np.ndarray, out: np.ndarray | None = None) -> np.ndarray:
        """``H x`` without the constant energy."""

        return self.engine.matvec(self.check_vector(x), out=out)

    def apply_excitation(self, x: np.ndarray, crea: int, anni: int, orig_target_irrep: int) -> np.ndarray:
        return self.engine.apply_excitation(x, crea, anni, orig_target_irrep)

    def diag_ham(self) -> np.ndarray:
        return _diagonal.diag_ham(self)

    def diag_ham_squared(self) -> np.ndarray:
        return _diagonal.diag_ham_squared(self)

    def lowest_energy_determinant(self) -> int:
        return _diagonal.lowest_energy_determinant(self.diag_ham())

    def get_matrix_element(self, bra_up, bra_down, ket_up, ket_down) -> float:
        return _diagonal.get_matrix_element(self.gmat, self.eri, bra_up, bra_down, ket_up, ket_down)

    def dense_hamiltonian(self) -> np.ndarray:
        """Full matrix (without constant) from unit-vector products; small problems only."""

        n = self.vec_length()
        ham = np.zeros((n, n), dtype=np.float64)
        unit = np.zeros(n, dtype=np.float64)
        for col in range(n):
            unit[col] = 1.0
            ham[:, col] = self.ham_times_vec(unit)
            unit[col] = 0.0
        return ham

    def check_hamiltonian(self) -> dict[str, float]:
        """RMS deviations between the product-built Hamiltonian and the
        diagonal, Slater-Condon and diagonal-of-square routines."""

        n = self.vec_length()
        ham = self.dense_hamiltonian()
        bits = [self.bits_of_counter(0, i) for i in range(n)]
        elem = np.array(
            [[self.get_matrix_element(*bits[r], *bits[c]) for c in range(n)] for r in range(n)],
            dtype=np.float64,
        ).reshape(n, n)
        report = {
            "diag": _rms(self.diag_ham() - np.diag(ham)),
            "matrix_elements": _rms(ham - elem),
            "diag_squared": _rms(self.diag_ham_squared() - np.einsum("ij,ji->i", ham, ham)),
        }
        self.observer.on_event("CheckHamiltonian", report)
        return report

    # ------------------------------------------------------------------
    # Ground state
    # ------------------------------------------------------------------

    def gs_davidson(self, x0: np.ndarray | None = None) -> GroundStateResult:
        """Lowest eigenpair by Davidson with the ``diag_ham`` preconditioner."""

        cfg = self.config
        n = self.vec_length()
        if n == 0:
            raise ValueError("the FCI vector space is empty")
        guess = self.random() if x0 is None else self.check_vector(x0).copy()
        if not self.norm(guess) > 0.0:
            raise ValueError("initial guess must be nonzero")
        rtol = float(cfg.rtol_base) * math.sqrt(float(n))
        diag = self.diag_ham()
        cutoff = float(cfg.precond_cutoff)

        def aop(xs: list[np.ndarray]) -> list[np.ndarray]:
            return [self.ham_times_vec(x) for x in xs]

        def precond(r: np.ndarray, e: float, _x: np.ndarray) -> np.ndarray:
            denom = diag - e
            denom = np.where(np.abs(denom) < cutoff, np.where(denom < 0.0, -cutoff, cutoff), denom)
            return r / denom

        num_keep = max(1, min(int(cfg.davidson_num_keep), int(cfg.davidson_max_space) - 1))
        res = davidson1_result(
            aop,
            [guess],
            precond,
            tol=rtol,
            tol_residual=rtol,
            max_cycle=int(cfg.davidson_max_cycle),
            max_space=int(cfg.davidson_max_space),
            nroots=1,
            num_keep=num_keep,
        )
        energy = float(res.e[0]) + self.econst
        vector = res.x[0]
        nmatvec = int(res.stats.get("hop_calls", 0))
        converged = bool(res.converged[0])
        self.observer.on_davidson(int(res.niter), energy, nmatvec, converged)
        if x0 is not None and isinstance(x0, np.ndarray) and x0.dtype == np.float64 and x0.shape == vector.shape:
            x0[:] = vector
        return GroundStateResult(energy=energy, vector=vector, converged=converged, niter=int(res.niter), nmatvec=nmatvec)

    # ------------------------------------------------------------------
    # Density matrices and spin
    # ------------------------------------------------------------------

    def fill_2rdm(self, x: np.ndarray) -> tuple[np.ndarray, float]:
        return _rdm.fill_2rdm(self, x)

    def fill_3rdm(self, x: np.ndarray) -> np.ndarray:
        return _rdm.fill_3rdm(self, x)

    def calc_spin_squared(self, x: np.ndarray) -> float:
        return _rdm.calc_spin_squared(self, x)

    # ------------------------------------------------------------------
    # Linear response
    # ------------------------------------------------------------------

    def cg_solve_system(self, alpha: float, beta: float, eta: float, rhs: np.ndarray, *, check_error: bool = False):
        return _cg.cg_solve_system(self, alpha, beta, eta, rhs, check_error=check_error)

    def act_with_number_operator(self, orb: int, x: np.ndarray) -> np.ndarray:
        return _greens.act_with_number_operator(self, orb, x)

    def act_with_second_quantized_operator(
        self, op: str, is_up: bool, orb: int, other: "FCISolver", other_vec: np.ndarray
    ) -> np.ndarray:
        return _greens.act_with_second_quantized_operator(self, op, is_up, orb, other, other_vec)

    def gf_matrix_addition(
        self,
        alpha: float,
        beta: float,
        eta: float,
        orbs_left: Sequence[int],
        orbs_right: Sequence[int],
        is_up: bool,
        gs_vector: np.ndarray,
        integrals: Integrals | None = None,
        *,
        with_rdm: bool = False,
    ) -> _greens.GFMatrixResult:
        return _greens.gf_matrix_addition(
            self, alpha, beta, eta, orbs_left, orbs_right, is_up, gs_vector, integrals, with_rdm=with_rdm
        )

    def gf_matrix_removal(
        self,
        alpha: float,
        beta: float,
        eta: float,
        orbs_left: Sequence[int],
        orbs_right: Sequence[int],
        is_up: bool,
        gs_vector: np.ndarray,
        integrals: Integrals | None = None,
        *,
        with_rdm: bool = False,
    ) -> _greens.GFMatrixResult:
        return _greens.gf_matrix_removal(
            self, alpha, beta, eta, orbs_left, orbs_right, is_up, gs_vector, integrals, with_rdm=with_rdm
        )

    def retarded_gf(self, omega, eta, orb_alpha, orb_beta, is_up, gs_energy, gs_vector, integrals=None) -> complex:
        return _greens.retarded_gf(self, omega, eta, orb_alpha, orb_beta, is_up, gs_energy, gs_vector, integrals)

    def retarded_gf_addition(self, omega, eta, orb_alpha, orb_beta, is_up, gs_energy, gs_vector, integrals=None, *,
                             with_rdm=False):
        return _greens.retarded_gf_addition(
            self, omega, eta, orb_alpha, orb_beta, is_up, gs_energy, gs_vector, integrals, with_rdm=with_rdm
        )

    def retarded_gf_removal(self, omega, eta, orb_alpha, orb_beta, is_up, gs_energy, gs_vector, integrals=None, *,
                            with_rdm=False):
        return _greens.retarded_gf_removal(
            self, omega, eta, orb_alpha, orb_beta, is_up, gs_energy, gs_vector, integrals, with_rdm=with_rdm
        )

    def density_response_gf(self, omega, eta, orb_alpha, orb_beta, gs_energy, gs_vector) -> complex:
        return _greens.density_response_gf(self, omega, eta, orb_alpha, orb_beta, gs_energy, gs_vector)

    def density_response_gf_forward(self, omega, eta, orb_alpha, orb_beta, gs_energy, gs_vector, *, with_rdm=False):
        return _greens.density_response_gf_forward(
            self, omega, eta, orb_alpha, orb_beta, gs_energy, gs_vector, with_rdm=with_rdm
        )

    def density_response_gf_backward(self, omega, eta, orb_alpha, orb_beta, gs_energy, gs_vector, *, with_rdm=False):
        return _greens.density_response_gf_backward(
            self, omega, eta, orb_alpha, orb_beta, gs_energy, gs_vector, with_rdm=with_rdm
        )
