from __future__ import annotations

from dataclasses import dataclass
import math

import numpy as np


@dataclass
class CGResult:
    """Solution ``real + 1j * imag`` of ``(alpha + beta H + i eta) x = b``.

    Attributes
    ----------
    real, imag : np.ndarray
        Real and imaginary parts of the solution.
    niter_imag, niter_real : int
        CG steps spent on the imaginary and real parts.
    residual : float or None
        Residual of the squared system without preconditioner,
        ``|| [(alpha + beta H)**2 + eta**2] x - (alpha + beta H - i eta) b ||``,
        when requested with ``check_error=True``.
    """

    real: np.ndarray
    imag: np.ndarray
    niter_imag: int
    niter_real: int
    residual: float | None = None

    @property
    def solution(self) -> np.ndarray:
        return self.real + 1j * self.imag


def alpha_plus_beta_ham(solver, alpha: float, beta: float, x: np.ndarray) -> np.ndarray:
    """``(alpha + beta H) x`` including the constant energy in ``H``."""

    out = solver.ham_times_vec(x)
    prefactor = float(alpha) + float(beta) * float(solver.econst)
    out *= float(beta)
    solver.linalg.axpy(prefactor, x, out)
    return out


def shifted_square_operator(
    solver, alpha: float, beta: float, eta: float, precon: np.ndarray, x: np.ndarray
) -> np.ndarray:
    """``precon [(alpha + beta H)**2 + eta**2] precon x``."""

    tmp = precon * x
    tmp2 = alpha_plus_beta_ham(solver, alpha, beta, tmp)
    out = alpha_plus_beta_ham(solver, alpha, beta, tmp2)
    solver.linalg.axpy(float(eta) * float(eta), tmp, out)
    out *= precon
    return out


def diag_preconditioner(solver, alpha: float, beta: float, eta: float) -> np.ndarray:
    """``1 / sqrt(diag[(alpha + beta H)**2 + eta**2])`` from the diagonals of ``H`` and ``H**2``."""

    diag = solver.diag_ham()
    diag2 = solver.diag_ham_squared()
    alpha_bis = float(alpha) + float(beta) * float(solver.econst)
    elem = (alpha_bis * alpha_bis + float(eta) ** 2) + 2.0 * alpha_bis * float(beta) * diag + float(beta) ** 2 * diag2
    precon = 1.0 / np.sqrt(elem)
    if precon.size:
        solver.observer.on_event(
            "CGDiagPrecond",
            {"min_diag": float(1.0 / np.max(precon) ** 2), "max_diag": float(1.0 / np.min(precon) ** 2)},
        )
    return precon


def _cg_core(
    solver,
    alpha: float,
    beta: float,
    eta: float,
    precon: np.ndarray,
    sol: np.ndarray,
    rhs: np.ndarray,
    threshold: float,
    max_cycle: int | None,
) -> int:
    """Plain CG on the preconditioned square operator; updates ``sol`` in place."""

    la = solver.linalg
    resid = rhs.copy()
    la.axpy(-1.0, shifted_square_operator(solver, alpha, beta, eta, precon, sol), resid)
    pvec = resid.copy()
    rr = la.dot(resid, resid)
    rnorm = math.sqrt(rr)
    step = 0
    while rnorm >= threshold:
        if max_cycle is not None and step >= int(max_cycle):
            raise RuntimeError(
                f"CG did not reach the residual threshold {threshold:.3e} in {max_cycle} steps (|r| = {rnorm:.3e})"
            )
        opp = shifted_square_operator(solver, alpha, beta, eta, precon, pvec)
        alpha_k = rr / la.dot(pvec, opp)
        la.axpy(alpha_k, pvec, sol)
        la.axpy(-alpha_k, opp, resid)
        rr_new = la.dot(resid, resid)
        beta_k = rr_new / rr
        pvec *= beta_k
        pvec += resid
        step += 1
        rr = rr_new
        rnorm = math.sqrt(rr)
        solver.observer.on_cg_step(step, rnorm)
    return step


def cg_solve_system(
    solver,
    alpha: float,
    beta: float,
    eta: float,
    rhs: np.ndarray,
    *,
    check_error: bool = False,
) -> CGResult:
    """Solve ``(alpha + beta H + i eta)(x_re + i x_im) = b`` for real ``b``.

    CG needs a symmetric positive definite operator, so the system is
    multiplied by ``(alpha + beta H - i eta)``:

    ``p [(alpha + beta H)**2 + eta**2] p y = p (alpha + beta H - i eta) b``,
    ``x = p y``

    with the Jacobi preconditioner ``p``. The imaginary part is solved first;
    ``-(alpha + beta H) / eta * x_im`` is then the starting guess of the real
    part.
    """

    eta = float(eta)
    if eta == 0.0:
        raise ValueError("eta must be nonzero")
    alpha = float(alpha)
    beta = float(beta)
    rhs = solver.check_vector(rhs)
    n = int(rhs.size)
    if n == 0:
        empty = np.zeros(0, dtype=np.float64)
        return CGResult(real=empty, imag=empty.copy(), niter_imag=0, niter_real=0, residual=0.0 if check_error else None)
    cfg = solver.config
    threshold = 100.0 * float(cfg.rtol_base) * math.sqrt(float(n))
    cutoff = float(cfg.precond_cutoff)
    precon = diag_preconditioner(solver, alpha, beta, eta)

    # Imaginary part; the guess is exact for a diagonal operator.
    resid = -eta * precon * rhs
    imag = resid.copy()
    niter_imag = _cg_core(solver, alpha, beta, eta, precon, imag, resid, threshold, cfg.cg_max_cycle)
    imag *= precon

    # Real part.
    real = alpha_plus_beta_ham(solver, -alpha / eta, -beta / eta, imag)
    real /= np.where(np.abs(precon) > cutoff, precon, cutoff)
    resid = precon * alpha_plus_beta_ham(solver, alpha, beta, rhs)
    niter_real = _cg_core(solver, alpha, beta, eta, precon, real, resid, threshold, cfg.cg_max_cycle)
    real *= precon

    residual = None
    if check_error:
        ones = np.ones(n, dtype=np.float64)
        err_re = shifted_square_operator(solver, alpha, beta, eta, ones, real)
        err_re -= alpha_plus_beta_ham(solver, alpha, beta, rhs)
        err_im = shifted_square_operator(solver, alpha, beta, eta, ones, imag)
        solver.linalg.axpy(eta, rhs, err_im)
        residual = math.sqrt(solver.linalg.dot(err_re, err_re) + solver.linalg.dot(err_im, err_im))

    solver.observer.on_cg_done(
        {"niter_imag": niter_imag, "niter_real": niter_real, "threshold": threshold, "residual": residual}
    )
    return CGResult(real=real, imag=imag, niter_imag=niter_imag, niter_real=niter_real, residual=residual)
