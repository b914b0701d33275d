from __future__ import annotations

from typing import Sequence

import numpy as np


# Abelian point groups and their irrep counts; irreps are labelled in the
# XOR-compatible order (Ag=0, B1g=1, ... for D2h).
_GROUP_NIRREP: dict[str, int] = {
    "c1": 1,
    "ci": 2,
    "c2": 2,
    "cs": 2,
    "d2": 4,
    "c2v": 4,
    "c2h": 4,
    "d2h": 8,
}

# Molpro (FCIDUMP) 1-based irrep ids -> XOR labels.
_MOLPRO_TO_XOR: dict[str, tuple[int, ...]] = {
    "c1": (0,),
    "ci": (0, 1),
    "c2": (0, 1),
    "cs": (0, 1),
    "d2": (0, 3, 2, 1),
    "c2v": (0, 2, 3, 1),
    "c2h": (0, 2, 3, 1),
    "d2h": (0, 7, 6, 1, 5, 2, 3, 4),
}


def group_nirrep(group: str) -> int:
    """Number of irreps of an Abelian point group (case-insensitive name)."""

    key = str(group).strip().lower()
    if key not in _GROUP_NIRREP:
        raise ValueError(f"unknown point group {group!r}; expected one of {sorted(_GROUP_NIRREP)}")
    return int(_GROUP_NIRREP[key])


def molpro_to_xor(group: str, orbsym: Sequence[int]) -> np.ndarray:
    """Convert 1-based Molpro irrep ids to 0-based XOR labels."""

    key = str(group).strip().lower()
    if key not in _MOLPRO_TO_XOR:
        raise ValueError(f"unknown point group {group!r}")
    table = np.asarray(_MOLPRO_TO_XOR[key], dtype=np.int64)
    ids = np.asarray(orbsym, dtype=np.int64).ravel()
    if ids.size and (int(ids.min()) < 1 or int(ids.max()) > int(table.size)):
        raise ValueError(f"Molpro irrep ids must lie in [1, {table.size}] for group {group!r}")
    return table[ids - 1]


def xor_product_table(nirrep: int) -> np.ndarray:
    nirrep = int(nirrep)
    if nirrep < 1 or (nirrep & (nirrep - 1)) != 0:
        raise ValueError(f"XOR product table requires a power-of-two irrep count, got {nirrep}")
    labels = np.arange(nirrep, dtype=np.int64)
    return np.bitwise_xor(labels[:, None], labels[None, :])


class SymmetryTable:
    """Abelian irrep product table plus the orbital-to-irrep map.

    Parameters
    ----------
    orbsym : sequence of int
        Irrep label of every orbital, length ``norb``.
    nirrep : int, optional
        Number of irreps. Inferred from ``group``, ``product_table`` or the
        largest label in ``orbsym`` (rounded up to a power of two).
    product_table : array_like, optional
        ``(nirrep, nirrep)`` multiplication table. Defaults to XOR.
    group : str, optional
        Point-group name (``"c1"``, ``"c2v"``, ``"d2h"``, ...).

    Notes
    -----
    The table must describe an Abelian group with identity 0 in which every
    element is its own inverse; the two-index excitation bookkeeping relies
    on ``a x a == 0``.
    """

    def __init__(
        self,
        orbsym: Sequence[int],
        *,
        nirrep: int | None = None,
        product_table: np.ndarray | None = None,
        group: str | None = None,
    ) -> None:
        orbsym_arr = np.array(orbsym, dtype=np.int64).ravel()
        self.group = None if group is None else str(group).strip().lower()

        if product_table is not None:
            table = np.array(product_table, dtype=np.int64)
            if table.ndim != 2 or table.shape[0] != table.shape[1]:
                raise ValueError("product_table must be a square 2D array")
            n_tab = int(table.shape[0])
            if nirrep is not None and int(nirrep) != n_tab:
                raise ValueError(f"nirrep={nirrep} does not match product_table size {n_tab}")
            nirrep = n_tab
        else:
            if nirrep is None:
                if self.group is not None:
                    nirrep = group_nirrep(self.group)
                else:
                    top = int(orbsym_arr.max()) + 1 if orbsym_arr.size else 1
                    nirrep = 1
                    while nirrep < top:
                        nirrep *= 2
            table = xor_product_table(int(nirrep))

        nirrep = int(nirrep)
        if self.group is not None and group_nirrep(self.group) != nirrep:
            raise ValueError(f"group {self.group!r} has {group_nirrep(self.group)} irreps, got nirrep={nirrep}")
        _validate_product_table(table)
        if orbsym_arr.size and (int(orbsym_arr.min()) < 0 or int(orbsym_arr.max()) >= nirrep):
            raise ValueError(f"orbital irreps must lie in [0, {nirrep}), got {orbsym_arr.tolist()}")

        self.nirrep = nirrep
        self.table = table
        self.table.setflags(write=False)
        self.orbsym = orbsym_arr
        self.orbsym.setflags(write=False)

    @property
    def norb(self) -> int:
        return int(self.orbsym.size)

    def product(self, a: int, b: int) -> int:
        return int(self.table[int(a), int(b)])

    def pair_irrep(self, i: int, j: int) -> int:
        return int(self.table[self.orbsym[int(i)], self.orbsym[int(j)]])

    def irrep_of_orbitals(self, occupied: Sequence[int]) -> int:
        irrep = 0
        for orb in occupied:
            irrep = int(self.table[irrep, self.orbsym[int(orb)]])
        return irrep


def _validate_product_table(table: np.ndarray) -> None:
    n = int(table.shape[0])
    if int(table.min()) < 0 or int(table.max()) >= n:
        raise ValueError("product_table entries must be valid irrep labels")
    if not np.array_equal(table, table.T):
        raise ValueError("product_table must be symmetric (Abelian group)")
    if not np.array_equal(table[0], np.arange(n)):
        raise ValueError("irrep 0 must be the identity of product_table")
    for row in table:
        if np.unique(row).size != n:
            raise ValueError("every row of product_table must be a permutation of the irreps")
    if not np.all(np.diag(table) == 0):
        raise ValueError("every irrep must be its own inverse (diag(product_table) == 0)")
