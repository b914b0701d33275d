"""detfci: determinant-based full configuration interaction with Abelian symmetry."""

from importlib.metadata import PackageNotFoundError, version as _dist_version

from detfci.config import FCIConfig
from detfci.integrals import Integrals, load_fcidump
from detfci.observer import FCIObserver, NullObserver, PrintObserver, RecordingObserver
from detfci.solver import FCISolver, GroundStateResult
from detfci.symmetry import SymmetryTable
from detfci.threads import blas_thread_limit

try:
    __version__ = _dist_version("detfci")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.1.0"

__all__ = [
    "__version__",
    # Core classes
    "FCISolver",
    "FCIConfig",
    "Integrals",
    "SymmetryTable",
    "GroundStateResult",
    # Diagnostics
    "FCIObserver",
    "NullObserver",
    "PrintObserver",
    "RecordingObserver",
    # Helpers
    "load_fcidump",
    "blas_thread_limit",
]
