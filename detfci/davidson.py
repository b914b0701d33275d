from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Any, Callable, Sequence

import numpy as np


Vec = np.ndarray
AOP = Callable[[list[Vec]], list[Vec]]
Precond = Callable[[Vec, float, Vec], Vec]


@dataclass
class DavidsonResult:
    """Lowest eigenpairs found by :func:`davidson1_result`.

    Attributes
    ----------
    converged : np.ndarray
        ``(nroots,)`` bool, per-root convergence flags.
    e : np.ndarray
        ``(nroots,)`` Ritz values, ascending.
    x : list of np.ndarray
        Normalized Ritz vectors.
    niter : int
        Subspace diagonalizations performed.
    stats : dict
        ``hop_calls``, ``hop_time_s``, ``restarts`` and ``wall_time_s``.
    """

    converged: np.ndarray
    e: np.ndarray
    x: list[np.ndarray]
    niter: int
    stats: dict[str, float] = field(default_factory=dict)


class _Subspace:
    """Orthonormal basis ``V``, its images ``W = A V`` and the projection ``V^T W``.

    The projected matrix grows by one bordered block per expansion; a collapse
    rotates ``V`` and ``W`` onto Ritz vectors, which makes it diagonal.
    """

    def __init__(self, n: int, max_space: int, lindep: float) -> None:
        self.n = int(n)
        self.max_space = int(max_space)
        self.lindep = float(lindep)
        self.basis = np.zeros((self.n, self.max_space), dtype=np.float64, order="F")
        self.sigma = np.zeros((self.n, self.max_space), dtype=np.float64, order="F")
        self.proj = np.zeros((self.max_space, self.max_space), dtype=np.float64)
        self.size = 0

    @property
    def room(self) -> int:
        return self.max_space - self.size

    def orthonormalize(self, vec: np.ndarray, extra: Sequence[np.ndarray] = ()) -> np.ndarray | None:
        vec = np.array(vec, dtype=np.float64).ravel()
        if vec.size != self.n:
            raise ValueError(f"vector has size {vec.size}, expected {self.n}")
        basis = self.basis[:, : self.size]
        for _sweep in range(2):
            if self.size:
                vec -= basis @ (basis.T @ vec)
            for other in extra:
                vec -= float(other @ vec) * other
        nrm = float(np.linalg.norm(vec))
        if nrm <= self.lindep:
            return None
        return vec / nrm

    def extend(self, vecs: list[np.ndarray], images: list[np.ndarray]) -> None:
        lo = self.size
        hi = lo + len(vecs)
        for k, (v, w) in enumerate(zip(vecs, images)):
            self.basis[:, lo + k] = v
            self.sigma[:, lo + k] = np.asarray(w, dtype=np.float64).ravel()
        block = self.basis[:, :hi].T @ self.sigma[:, lo:hi]
        self.proj[:hi, lo:hi] = block
        self.proj[lo:hi, :hi] = block.T
        self.size = hi

    def ritz(self) -> tuple[np.ndarray, np.ndarray]:
        m = self.size
        hsub = self.proj[:m, :m]
        return np.linalg.eigh(0.5 * (hsub + hsub.T))

    def collapse(self, theta: np.ndarray, coeff: np.ndarray) -> None:
        keep = int(coeff.shape[1])
        m = self.size
        self.basis[:, :keep] = self.basis[:, :m] @ coeff
        self.sigma[:, :keep] = self.sigma[:, :m] @ coeff
        self.proj[:] = 0.0
        self.proj[np.arange(keep), np.arange(keep)] = theta[:keep]
        self.size = keep


def _apply(aop: AOP, vecs: list[np.ndarray], stats: dict[str, float]) -> list[np.ndarray]:
    t0 = time.perf_counter()
    images = aop([np.ascontiguousarray(v) for v in vecs])
    if not isinstance(images, list) or len(images) != len(vecs):
        raise ValueError("aop must return one image per input vector")
    stats["hop_calls"] += len(vecs)
    stats["hop_time_s"] += time.perf_counter() - t0
    return images


def davidson1_result(
    aop: AOP,
    x0: list[Vec],
    precond: Precond,
    *,
    tol: float = 1e-10,
    lindep: float = 1e-14,
    max_cycle: int = 50,
    max_space: int = 12,
    nroots: int = 1,
    tol_residual: float | None = None,
    num_keep: int | None = None,
    callback: Callable[[int, np.ndarray, np.ndarray], None] | None = None,
) -> DavidsonResult:
    """Lowest ``nroots`` eigenpairs of a symmetric operator known only through ``aop``.

    Parameters
    ----------
    aop : callable
        ``aop(xs) -> ys`` on lists of 1-D float64 arrays.
    x0 : list of np.ndarray
        Start vectors; the first ``nroots`` independent ones are used.
    precond : callable
        ``precond(residual, ritz_value, ritz_vector) -> correction``.
    tol : float, optional
        Residual norm at which a root is converged.
    lindep : float, optional
        Corrections whose norm drops below this after orthogonalization are
        discarded.
    max_cycle : int, optional
        Maximum number of subspace diagonalizations.
    max_space : int, optional
        Basis size that triggers a collapse onto the lowest Ritz vectors.
    nroots : int, optional
        Number of eigenpairs.
    tol_residual : float, optional
        Looser residual bound accepted once the Ritz value moves by less than
        ``tol`` between iterations (default ``sqrt(tol)``).
    num_keep : int, optional
        Ritz vectors kept by a collapse (default ``nroots``).
    callback : callable, optional
        ``callback(iteration, ritz_values, residual_norms)``.

    Notes
    -----
    The iteration also stops as converged once the basis spans the whole
    space, where the Ritz pairs are exact.
    """

    nroots = int(nroots)
    max_cycle = int(max_cycle)
    max_space = int(max_space)
    num_keep = nroots if num_keep is None else int(num_keep)
    if nroots < 1:
        raise ValueError("nroots must be >= 1")
    if max_cycle < 1:
        raise ValueError("max_cycle must be >= 1")
    if max_space <= nroots:
        raise ValueError("max_space must exceed nroots")
    if not nroots <= num_keep < max_space:
        raise ValueError("num_keep must lie in [nroots, max_space)")
    if not x0:
        raise ValueError("x0 must not be empty")
    tol = float(tol)
    loose = float(np.sqrt(tol)) if tol_residual is None else float(tol_residual)

    n = int(np.asarray(x0[0]).size)
    if n <= 0:
        raise ValueError("vectors must be non-empty")
    stats = {"hop_calls": 0.0, "hop_time_s": 0.0, "restarts": 0.0, "wall_time_s": 0.0}
    t_start = time.perf_counter()
    space = _Subspace(n, max_space, lindep)

    start: list[np.ndarray] = []
    for guess in x0:
        if len(start) == nroots:
            break
        vec = space.orthonormalize(guess, start)
        if vec is not None:
            start.append(vec)
    if len(start) < nroots:
        raise RuntimeError("the start vectors span fewer than nroots directions")
    space.extend(start, _apply(aop, start, stats))

    conv = np.zeros(nroots, dtype=np.bool_)
    theta_prev: np.ndarray | None = None
    e = np.zeros(nroots)
    ritz_vecs = np.zeros((n, nroots))
    niter = 0
    while niter < max_cycle:
        niter += 1
        theta, coeff = space.ritz()
        m = space.size
        e = theta[:nroots].copy()
        ritz_vecs = space.basis[:, :m] @ coeff[:, :nroots]
        resid = space.sigma[:, :m] @ coeff[:, :nroots] - ritz_vecs * e[None, :]
        rnorm = np.linalg.norm(resid, axis=0)
        shift = np.zeros(nroots) if theta_prev is None else e - theta_prev
        theta_prev = e.copy()
        if callback is not None:
            callback(niter, e, rnorm)

        conv = (rnorm <= tol) | ((np.abs(shift) <= tol) & (rnorm <= loose))
        if m == n:
            conv[:] = True
        if bool(np.all(conv)):
            break

        corrections: list[np.ndarray] = []
        for root in np.flatnonzero(~conv):
            t = precond(np.ascontiguousarray(resid[:, root]), float(e[root]), np.ascontiguousarray(ritz_vecs[:, root]))
            t = space.orthonormalize(t, corrections)
            if t is not None:
                corrections.append(t)
        if not corrections:
            break

        if len(corrections) > space.room:
            space.collapse(theta, coeff[:, :num_keep])
            stats["restarts"] += 1
            kept = []
            for t in corrections:
                t = space.orthonormalize(t, kept)
                if t is not None:
                    kept.append(t)
            corrections = kept[: space.room]
            if not corrections:
                continue
        space.extend(corrections, _apply(aop, corrections, stats))

    stats["wall_time_s"] = time.perf_counter() - t_start
    return DavidsonResult(
        converged=conv.copy(),
        e=np.asarray(e, dtype=np.float64),
        x=[np.ascontiguousarray(ritz_vecs[:, k]) for k in range(nroots)],
        niter=niter,
        stats=stats,
    )


def davidson1(aop: AOP, x0: list[Vec], precond: Precond, **kwargs: Any) -> tuple[np.ndarray, np.ndarray, list[np.ndarray]]:
    """:func:`davidson1_result` unpacked as ``(converged, e, x)``."""

    res = davidson1_result(aop, x0, precond, **kwargs)
    return res.converged, res.e, res.x
