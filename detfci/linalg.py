from __future__ import annotations

import numpy as np
from scipy.linalg import blas as _blas


class LinAlg:
    """Dense primitives over contiguous float64 buffers.

    Subclasses provide ``dot``, ``axpy``, ``scal``, ``copy`` and ``gemm``;
    the remaining helpers are shared. ``axpy``, ``scal`` and ``copy`` work in
    place on their last array argument.
    """

    name = "base"

    def dot(self, x: np.ndarray, y: np.ndarray) -> float:
        raise NotImplementedError

    def axpy(self, a: float, x: np.ndarray, y: np.ndarray) -> None:
        raise NotImplementedError

    def scal(self, a: float, x: np.ndarray) -> None:
        raise NotImplementedError

    def copy(self, src: np.ndarray, dst: np.ndarray) -> None:
        raise NotImplementedError

    def gemm(
        self,
        a: np.ndarray,
        b: np.ndarray,
        *,
        alpha: float = 1.0,
        trans_a: bool = False,
        trans_b: bool = False,
    ) -> np.ndarray:
        raise NotImplementedError

    def norm(self, x: np.ndarray) -> float:
        return float(np.sqrt(max(0.0, self.dot(x, x))))

    def zeros(self, n: int) -> np.ndarray:
        return np.zeros(int(n), dtype=np.float64)

    def fill_zero(self, x: np.ndarray) -> None:
        x.fill(0.0)

    def fill_random(self, x: np.ndarray, rng: np.random.Generator | None = None) -> None:
        """Fill ``x`` with uniform values in ``[-1, 1)``."""

        rng = np.random.default_rng() if rng is None else rng
        x[:] = 2.0 * rng.random(x.shape[0]) - 1.0


class NumpyLinAlg(LinAlg):
    name = "numpy"

    def dot(self, x: np.ndarray, y: np.ndarray) -> float:
        return float(np.dot(x, y))

    def axpy(self, a: float, x: np.ndarray, y: np.ndarray) -> None:
        y += float(a) * x

    def scal(self, a: float, x: np.ndarray) -> None:
        x *= float(a)

    def copy(self, src: np.ndarray, dst: np.ndarray) -> None:
        np.copyto(dst, src)

    def gemm(self, a, b, *, alpha=1.0, trans_a=False, trans_b=False):
        aa = a.T if trans_a else a
        bb = b.T if trans_b else b
        out = aa @ bb
        if float(alpha) != 1.0:
            out *= float(alpha)
        return out


class BlasLinAlg(LinAlg):
    """Same primitives routed through :mod:`scipy.linalg.blas` (``d*`` routines)."""

    name = "blas"

    def dot(self, x: np.ndarray, y: np.ndarray) -> float:
        if x.size == 0:
            return 0.0
        return float(_blas.ddot(x, y))

    def axpy(self, a: float, x: np.ndarray, y: np.ndarray) -> None:
        if y.size == 0:
            return
        res = _blas.daxpy(x, y, a=float(a))
        if res is not y:
            y[:] = res

    def scal(self, a: float, x: np.ndarray) -> None:
        if x.size == 0:
            return
        res = _blas.dscal(float(a), x)
        if res is not x:
            x[:] = res

    def copy(self, src: np.ndarray, dst: np.ndarray) -> None:
        if dst.size == 0:
            return
        res = _blas.dcopy(src, dst)
        if res is not dst:
            dst[:] = res

    def gemm(self, a, b, *, alpha=1.0, trans_a=False, trans_b=False):
        m = a.shape[1] if trans_a else a.shape[0]
        n = b.shape[0] if trans_b else b.shape[1]
        if m == 0 or n == 0 or a.size == 0:
            return np.zeros((m, n), dtype=np.float64)
        return _blas.dgemm(float(alpha), a, b, trans_a=int(bool(trans_a)), trans_b=int(bool(trans_b)))


def get_linalg(name: str | LinAlg = "numpy") -> LinAlg:
    if isinstance(name, LinAlg):
        return name
    key = str(name).strip().lower()
    if key == "numpy":
        return NumpyLinAlg()
    if key == "blas":
        return BlasLinAlg()
    raise ValueError(f"unknown linear-algebra backend {name!r}; expected 'numpy' or 'blas'")
