from __future__ import annotations

from dataclasses import dataclass, fields, replace
import os
from typing import Any


_LINALG_BACKENDS = ("numpy", "blas")


def _env_int(key: str) -> int | None:
    raw = os.environ.get(key, "").strip()
    if raw == "":
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{key} must be an integer, got: {raw!r}") from e


def _env_float(key: str) -> float | None:
    raw = os.environ.get(key, "").strip()
    if raw == "":
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{key} must be a number, got: {raw!r}") from e


def auto_num_threads() -> int:
    """Return a worker-thread hint from the environment (default 1)."""

    for key in ("DETFCI_NUM_THREADS", "OMP_NUM_THREADS"):
        val = os.environ.get(key)
        if not val:
            continue
        try:
            n = int(val)
        except ValueError:
            continue
        if n > 0:
            return n
    return 1


@dataclass(frozen=True)
class FCIConfig:
    """Tunable parameters of :class:`~detfci.solver.FCISolver`.

    Attributes
    ----------
    max_memory_mb : float
        Budget for the two Hamiltonian-product scratch tiles, in MB.
    nthreads : int
        Python worker threads for row-parallel kernels.
    verbose : int
        Diagnostic level for the default :class:`~detfci.observer.PrintObserver`
        (0 silent, 1 summaries and wall times, 2 per-iteration detail).
    davidson_max_space : int
        Davidson subspace size before a restart.
    davidson_num_keep : int
        Ritz vectors kept at a Davidson restart.
    davidson_max_cycle : int
        Davidson iteration cap.
    rtol_base : float
        Residual tolerance per sqrt(vector length); the Davidson threshold is
        ``rtol_base * sqrt(n)`` and the CG threshold ``100 * rtol_base * sqrt(n)``.
    precond_cutoff : float
        Smallest magnitude used when dividing by a preconditioner element.
    cg_max_cycle : int or None
        CG iteration cap; ``None`` iterates until the residual criterion holds.
    max_norb : int
        Largest orbital count accepted by the determinant enumerator.
    seed : int or None
        Seed of the random Davidson start vector.
    linalg : str
        Linear-algebra backend, ``"numpy"`` or ``"blas"`` (SciPy BLAS).
    """

    max_memory_mb: float = 100.0
    nthreads: int = 1
    verbose: int = 0
    davidson_max_space: int = 32
    davidson_num_keep: int = 3
    davidson_max_cycle: int = 1000
    rtol_base: float = 1e-10
    precond_cutoff: float = 1e-12
    cg_max_cycle: int | None = None
    max_norb: int = 30
    seed: int | None = None
    linalg: str = "numpy"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not float(self.max_memory_mb) > 0.0:
            raise ValueError(f"max_memory_mb must be > 0, got {self.max_memory_mb}")
        if int(self.nthreads) < 1:
            raise ValueError(f"nthreads must be >= 1, got {self.nthreads}")
        if int(self.davidson_max_space) < 2:
            raise ValueError("davidson_max_space must be >= 2")
        if not 1 <= int(self.davidson_num_keep) < int(self.davidson_max_space):
            raise ValueError("davidson_num_keep must lie in [1, davidson_max_space)")
        if int(self.davidson_max_cycle) < 1:
            raise ValueError("davidson_max_cycle must be >= 1")
        if not float(self.rtol_base) > 0.0:
            raise ValueError("rtol_base must be > 0")
        if not float(self.precond_cutoff) > 0.0:
            raise ValueError("precond_cutoff must be > 0")
        if self.cg_max_cycle is not None and int(self.cg_max_cycle) < 1:
            raise ValueError("cg_max_cycle must be >= 1 or None")
        if not 1 <= int(self.max_norb) <= 62:
            raise ValueError("max_norb must lie in [1, 62]")
        if str(self.linalg) not in _LINALG_BACKENDS:
            raise ValueError(f"linalg must be one of {_LINALG_BACKENDS}, got {self.linalg!r}")

    @classmethod
    def from_env(cls, **overrides: Any) -> "FCIConfig":
        """Build a config from ``DETFCI_*`` environment variables.

        Recognized keys: ``DETFCI_MAX_MEMORY_MB``, ``DETFCI_NUM_THREADS``
        (falls back to ``OMP_NUM_THREADS``), ``DETFCI_VERBOSE``,
        ``DETFCI_CG_MAX_CYCLE``. Keyword overrides win over the environment.
        """

        kwargs: dict[str, Any] = {"nthreads": auto_num_threads()}
        mem = _env_float("DETFCI_MAX_MEMORY_MB")
        if mem is not None:
            kwargs["max_memory_mb"] = mem
        verbose = _env_int("DETFCI_VERBOSE")
        if verbose is not None:
            kwargs["verbose"] = verbose
        cg_cap = _env_int("DETFCI_CG_MAX_CYCLE")
        if cg_cap is not None:
            kwargs["cg_max_cycle"] = cg_cap
        known = {f.name for f in fields(cls)}
        for key in overrides:
            if key not in known:
                raise ValueError(f"unknown FCIConfig field {key!r}")
        kwargs.update(overrides)
        return cls(**kwargs)

    def replace(self, **changes: Any) -> "FCIConfig":
        return replace(self, **changes)
