from __future__ import annotations

import sys
from typing import Any, TextIO


class FCIObserver:
    """Checkpoint callbacks invoked by the solvers.

    Every hook is a no-op; subclasses override what they need. Hooks are
    called between kernels, never from inside the vectorized loops.
    """

    def on_startup(self, info: dict[str, Any]) -> None:
        pass

    def on_matvec(self, seconds: float) -> None:
        pass

    def on_davidson(self, niter: int, energy: float, nmatvec: int, converged: bool) -> None:
        pass

    def on_cg_step(self, step: int, residual: float) -> None:
        pass

    def on_cg_done(self, info: dict[str, Any]) -> None:
        pass

    def on_event(self, name: str, info: dict[str, Any]) -> None:
        pass


class NullObserver(FCIObserver):
    pass


class PrintObserver(FCIObserver):
    """Print diagnostics to ``out`` gated by ``verbose``.

    Level 1 prints construction summaries, wall times and final results;
    level 2 adds per-irrep counts and per-iteration residuals.
    """

    def __init__(self, verbose: int = 1, out: TextIO | None = None) -> None:
        self.verbose = int(verbose)
        self.out = sys.stdout if out is None else out

    def _print(self, msg: str) -> None:
        print(msg, file=self.out)

    def on_startup(self, info: dict[str, Any]) -> None:
        if self.verbose <= 0:
            return
        self._print(f"FCISolver : L = {info['norb']}  nelec = ({info['nelec_up']}, {info['nelec_down']})  "
                    f"target irrep = {info['target_irrep']}")
        self._print(f"FCISolver : Number of variables in the FCI vector = {info['vec_length']}")
        self._print(
            f"FCISolver : The Hamiltonian product needs a workspace of {info['workspace_mb_full']:.6g} MB "
            f"(used: {info['workspace_mb']:.6g} MB)"
        )
        if self.verbose > 1:
            self._print(f"FCISolver : determinants per irrep (up)   = {info['num_up']}")
            self._print(f"FCISolver : determinants per irrep (down) = {info['num_down']}")
            self._print(f"FCISolver : lookup tables = {info['lookup_mb']:.6g} MB")

    def on_matvec(self, seconds: float) -> None:
        if self.verbose > 1:
            self._print(f"FCISolver : HamTimesVec wall time = {seconds:.6f} s")

    def on_davidson(self, niter: int, energy: float, nmatvec: int, converged: bool) -> None:
        if self.verbose > 1:
            self._print(f"FCISolver : Davidson iterations = {niter}, matrix-vector products = {nmatvec}")
        if self.verbose > 0:
            status = "Converged" if converged else "Unconverged"
            self._print(f"FCISolver : {status} ground state energy = {energy:.15g}")

    def on_cg_step(self, step: int, residual: float) -> None:
        if self.verbose > 1:
            self._print(f"  CG iter {step}: |r| = {residual:.2e}")

    def on_cg_done(self, info: dict[str, Any]) -> None:
        if self.verbose <= 0:
            return
        self._print(
            f"FCISolver : CG solve done (imag {info['niter_imag']} it, real {info['niter_real']} it, "
            f"threshold {info['threshold']:.2e})"
        )
        if info.get("residual") is not None:
            self._print(f"FCISolver : RMS error of the solution (without preconditioner) = {info['residual']:.3e}")

    def on_event(self, name: str, info: dict[str, Any]) -> None:
        if self.verbose <= 0:
            return
        body = "  ".join(f"{k} = {_fmt(v)}" for k, v in info.items())
        self._print(f"FCISolver : {name} : {body}")


class RecordingObserver(FCIObserver):
    """Keep every callback as ``(hook, payload)`` in :attr:`events`."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    def on_startup(self, info: dict[str, Any]) -> None:
        self.events.append(("startup", dict(info)))

    def on_matvec(self, seconds: float) -> None:
        self.events.append(("matvec", float(seconds)))

    def on_davidson(self, niter: int, energy: float, nmatvec: int, converged: bool) -> None:
        self.events.append(("davidson", {"niter": niter, "energy": energy, "nmatvec": nmatvec, "converged": converged}))

    def on_cg_step(self, step: int, residual: float) -> None:
        self.events.append(("cg_step", (int(step), float(residual))))

    def on_cg_done(self, info: dict[str, Any]) -> None:
        self.events.append(("cg_done", dict(info)))

    def on_event(self, name: str, info: dict[str, Any]) -> None:
        self.events.append((name, dict(info)))

    def names(self) -> list[str]:
        return [name for name, _payload in self.events]


def make_observer(verbose: int, out: TextIO | None = None) -> FCIObserver:
    if int(verbose) <= 0:
        return NullObserver()
    return PrintObserver(verbose=int(verbose), out=out)


def _fmt(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.10g}"
    return str(value)
