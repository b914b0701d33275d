from __future__ import annotations

import numpy as np

from detfci.symmetry import SymmetryTable

# Determinant bitstrings live in int64 words; bit 63 is the sign bit.
MAX_WORD_BITS = 63


class DeterminantEnumerator:
    """Bijection between same-spin determinants and per-irrep counters.

    All ``2**norb`` bitstrings are visited once in ascending order; every
    string with ``nelec`` set bits receives the next free counter of its
    irrep. Bit ``i`` of a string is the occupation of orbital ``i``.

    Attributes
    ----------
    strings : list of np.ndarray
        ``strings[irrep][counter]`` is the bitstring (int64).
    occupations : list of np.ndarray
        ``occupations[irrep]`` is the ``(n, norb)`` int8 occupation table.
    num_per_irrep : np.ndarray
        Number of determinants per irrep.
    """

    def __init__(self, symmetry: SymmetryTable, nelec: int, *, max_norb: int = 30) -> None:
        norb = int(symmetry.norb)
        nelec = int(nelec)
        max_norb = int(max_norb)
        if norb > MAX_WORD_BITS:
            raise ValueError(f"norb={norb} exceeds the {MAX_WORD_BITS}-bit determinant word")
        if norb > max_norb:
            raise ValueError(f"norb={norb} exceeds max_norb={max_norb} (dense 2**norb maps)")
        if nelec < 0 or nelec > norb:
            raise ValueError(f"nelec must lie in [0, {norb}], got {nelec}")

        self.symmetry = symmetry
        self.norb = norb
        self.nelec = nelec
        nirrep = int(symmetry.nirrep)

        all_strings = np.arange(1 << norb, dtype=np.int64)
        popcount = np.zeros(all_strings.size, dtype=np.int64)
        irrep_all = np.zeros(all_strings.size, dtype=np.int64)
        for orb in range(norb):
            bit = (all_strings >> orb) & 1
            popcount += bit
            irrep_all = symmetry.table[irrep_all, np.where(bit != 0, symmetry.orbsym[orb], 0)]

        keep = popcount == nelec
        selected = all_strings[keep]
        selected_irrep = irrep_all[keep]

        self.counter_of = np.full(all_strings.size, -1, dtype=np.int64)
        self.irrep_of = np.full(all_strings.size, -1, dtype=np.int64)
        self.strings: list[np.ndarray] = []
        self.occupations: list[np.ndarray] = []
        shifts = np.arange(norb, dtype=np.int64)
        for irrep in range(nirrep):
            strs = np.ascontiguousarray(selected[selected_irrep == irrep])
            self.counter_of[strs] = np.arange(strs.size, dtype=np.int64)
            self.irrep_of[strs] = irrep
            occ = ((strs[:, None] >> shifts[None, :]) & 1).astype(np.int8)
            strs.setflags(write=False)
            occ.setflags(write=False)
            self.strings.append(strs)
            self.occupations.append(occ)
        self.counter_of.setflags(write=False)
        self.irrep_of.setflags(write=False)
        self.num_per_irrep = np.asarray([s.size for s in self.strings], dtype=np.int64)
        self.num_per_irrep.setflags(write=False)

    @property
    def nirrep(self) -> int:
        return int(self.symmetry.nirrep)

    @property
    def total(self) -> int:
        return int(self.num_per_irrep.sum())

    def bits(self, irrep: int, counter: int) -> np.ndarray:
        """0/1 occupation array of a determinant."""

        irrep = int(irrep)
        counter = int(counter)
        if not 0 <= counter < int(self.num_per_irrep[irrep]):
            raise IndexError(f"counter {counter} out of range for irrep {irrep}")
        return np.asarray(self.occupations[irrep][counter], dtype=np.int64)

    def lookup(self, bitstring: int) -> tuple[int, int]:
        """Return ``(irrep, counter)`` of a bitstring, ``(-1, -1)`` if absent."""

        bitstring = int(bitstring)
        if not 0 <= bitstring < int(self.counter_of.size):
            return -1, -1
        return int(self.irrep_of[bitstring]), int(self.counter_of[bitstring])


def bits_to_string(bits: np.ndarray) -> int:
    bits = np.asarray(bits, dtype=np.int64).ravel()
    return int(np.sum(bits << np.arange(bits.size, dtype=np.int64)))


def string_to_bits(bitstring: int, norb: int) -> np.ndarray:
    return (int(bitstring) >> np.arange(int(norb), dtype=np.int64)) & 1
