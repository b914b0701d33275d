from __future__ import annotations

from typing import Any, Sequence

import numpy as np

from detfci.symmetry import SymmetryTable, molpro_to_xor


def _pair_index(norb: int) -> np.ndarray:
    """Packed index of the orbital pair ``(p, q)`` with ``p >= q``, symmetric in p and q."""

    orb = np.arange(int(norb), dtype=np.intp)
    big = np.maximum.outer(orb, orb)
    return big * (big + 1) // 2 + np.minimum.outer(orb, orb)


def _symmetric_from_tril(packed: np.ndarray, dim: int) -> np.ndarray:
    mat = np.zeros((dim, dim), dtype=np.float64)
    rows, cols = np.tril_indices(dim)
    mat[rows, cols] = packed
    mat[cols, rows] = packed
    return mat


def restore_eri1(eri: Any, norb: int) -> np.ndarray:
    """Expand two-electron integrals to the full chemist tensor ``(pq|rs)``.

    Accepts the full ``(norb,)*4`` tensor (also flattened), the
    ``(npair, npair)`` matrix over packed pairs ``p >= q`` and the packed lower
    triangle of that matrix, with ``npair = norb*(norb+1)//2``.
    """

    norb = int(norb)
    if norb < 0:
        raise ValueError("norb must be >= 0")
    arr = np.asarray(eri, dtype=np.float64)
    full = (norb,) * 4
    npair = norb * (norb + 1) // 2

    if arr.ndim == 4:
        if arr.shape != full:
            raise ValueError(f"eri has shape {arr.shape}, expected {full}")
        return np.array(arr, order="C")

    if arr.ndim == 2 and arr.shape == (npair, npair):
        pairs = arr
    elif arr.ndim == 1 and arr.size == npair * (npair + 1) // 2:
        pairs = _symmetric_from_tril(arr, npair)
    elif arr.ndim == 1 and arr.size == npair * npair:
        pairs = arr.reshape(npair, npair)
    elif arr.ndim == 1 and arr.size == norb**4:
        return np.array(arr.reshape(full), order="C")
    else:
        raise ValueError(f"cannot interpret eri of shape {arr.shape} for norb={norb}")

    idx = _pair_index(norb)
    return np.ascontiguousarray(pairs[np.ix_(idx.ravel(), idx.ravel())].reshape(full))


class Integrals:
    """One- and two-electron integrals of an orbital basis with Abelian symmetry.

    Parameters
    ----------
    h1e : array_like
        One-electron integrals ``T(i,j)``, shape ``(norb, norb)``.
    eri : array_like
        Two-electron integrals. Chemist notation ``(ij|kl)`` by default;
        any packed form accepted by :func:`restore_eri1` is allowed.
    orbsym : sequence of int, optional
        Irrep label per orbital (default: all orbitals in irrep 0).
    ecore : float, optional
        Constant energy term (nuclear repulsion, frozen core, ...).
    nirrep, group, product_table
        Forwarded to :class:`~detfci.symmetry.SymmetryTable`.
    notation : {"chemist", "physicist"}
        Convention of ``eri``. Physicist integrals ``<ij|kl>`` must be given
        as a full 4-index tensor.

    Notes
    -----
    The integrals are expected to respect the orbital symmetry: ``T(i,j)``
    vanishes unless ``I(i) == I(j)`` and ``(ij|kl)`` vanishes unless
    ``I(i) x I(j) x I(k) x I(l) == 0``. Symmetry-forbidden elements are never
    read by the sector-blocked Hamiltonian product.
    """

    def __init__(
        self,
        h1e: Any,
        eri: Any,
        *,
        orbsym: Sequence[int] | None = None,
        ecore: float = 0.0,
        nirrep: int | None = None,
        group: str | None = None,
        product_table: np.ndarray | None = None,
        notation: str = "chemist",
    ) -> None:
        tmat = np.array(h1e, dtype=np.float64, order="C")
        if tmat.ndim != 2 or tmat.shape[0] != tmat.shape[1]:
            raise ValueError(f"h1e must be a square matrix, got shape {tmat.shape}")
        norb = int(tmat.shape[0])

        notation_opt = str(notation).strip().lower()
        if notation_opt == "chemist":
            eri4 = restore_eri1(eri, norb)
        elif notation_opt == "physicist":
            vmat = np.asarray(eri, dtype=np.float64)
            if vmat.shape != (norb,) * 4:
                raise ValueError(f"physicist integrals must have shape {(norb,) * 4}, got {vmat.shape}")
            eri4 = np.ascontiguousarray(vmat.transpose(0, 2, 1, 3))
        else:
            raise ValueError("notation must be 'chemist' or 'physicist'")

        if not np.all(np.isfinite(tmat)):
            raise ValueError("h1e contains non-finite values")
        if not np.all(np.isfinite(eri4)):
            raise ValueError("eri contains non-finite values")

        if orbsym is None:
            orbsym = [0] * norb
        self.symmetry = SymmetryTable(orbsym, nirrep=nirrep, product_table=product_table, group=group)
        if self.symmetry.norb != norb:
            raise ValueError(f"orbsym has {self.symmetry.norb} entries but h1e has {norb} orbitals")

        self.tmat = tmat
        self.eri = eri4
        self.ecore = float(ecore)

    @classmethod
    def from_physicist(cls, tmat: Any, vmat: Any, **kwargs: Any) -> "Integrals":
        return cls(tmat, vmat, notation="physicist", **kwargs)

    @property
    def norb(self) -> int:
        return int(self.tmat.shape[0])

    @property
    def econst(self) -> float:
        return float(self.ecore)

    @property
    def orbsym(self) -> np.ndarray:
        return self.symmetry.orbsym

    @property
    def vmat(self) -> np.ndarray:
        """Physicist-notation view ``<ij|kl> = (ik|jl)``."""

        return self.eri.transpose(0, 2, 1, 3)

    def get_tmat(self, i: int, j: int) -> float:
        return float(self.tmat[int(i), int(j)])

    def get_vmat(self, i: int, j: int, k: int, l: int) -> float:
        return float(self.eri[int(i), int(k), int(j), int(l)])

    def gmat(self) -> np.ndarray:
        """``G(i,j) = T(i,j) - 0.5 * sum_k <ik|kj>``, the one-body part left
        after normal-ordering ``E_ij E_kl`` into pair products."""

        return self.tmat - 0.5 * np.einsum("ikkj->ij", self.eri)


def load_fcidump(path: str, *, group: str | None = None) -> tuple[Integrals, tuple[int, int], int]:
    """Read an FCIDUMP file through :mod:`pyscf.tools.fcidump`.

    Parameters
    ----------
    path : str
        FCIDUMP file name.
    group : str, optional
        Point group of the orbitals. When given, Molpro irrep ids in
        ``ORBSYM`` are mapped onto XOR labels; otherwise the ids are only
        shifted to 0-based labels.

    Returns
    -------
    integrals : Integrals
    nelec : tuple of int
        ``(nelec_up, nelec_down)`` from ``NELEC`` and ``MS2``.
    wfnsym : int
        Target irrep from ``ISYM`` (0-based, same mapping as ``ORBSYM``).
    """

    from pyscf.tools import fcidump  # noqa: PLC0415

    data = fcidump.read(str(path))
    norb = int(data["NORB"])
    nelec = int(data["NELEC"])
    ms2 = int(data.get("MS2", 0))
    if (nelec + ms2) % 2 != 0 or abs(ms2) > nelec:
        raise ValueError(f"inconsistent NELEC={nelec} and MS2={ms2}")
    nelec_up = (nelec + ms2) // 2
    nelec_down = nelec - nelec_up

    raw_orbsym = np.asarray(data.get("ORBSYM", [1] * norb), dtype=np.int64).ravel()
    raw_isym = int(data.get("ISYM", 1))
    if raw_orbsym.size != norb:
        raise ValueError(f"ORBSYM has {raw_orbsym.size} entries, expected {norb}")
    one_based = bool(raw_orbsym.size == 0 or int(raw_orbsym.min()) >= 1)
    if group is not None:
        if one_based:
            orbsym = molpro_to_xor(group, raw_orbsym)
            wfnsym = int(molpro_to_xor(group, [max(1, raw_isym)])[0])
        else:
            orbsym = raw_orbsym
            wfnsym = max(0, raw_isym)
    else:
        orbsym = raw_orbsym - 1 if one_based else raw_orbsym
        wfnsym = max(0, raw_isym - 1) if one_based else max(0, raw_isym)

    h1e = np.asarray(data["H1"], dtype=np.float64).reshape(norb, norb)
    eri = restore_eri1(data["H2"], norb)
    integrals = Integrals(h1e, eri, orbsym=orbsym, ecore=float(data.get("ECORE", 0.0)), group=group)
    return integrals, (int(nelec_up), int(nelec_down)), int(wfnsym)
