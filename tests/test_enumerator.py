from __future__ import annotations

from math import comb

import numpy as np
import pytest

from detfci.enumerator import DeterminantEnumerator, bits_to_string, string_to_bits
from detfci.lookup import build_excitation_tables
from detfci.symmetry import SymmetryTable


def _c2v_symmetry() -> SymmetryTable:
    return SymmetryTable([0, 1, 2, 3, 0, 1], group="c2v")


def test_counts_cover_all_strings():
    sym = _c2v_symmetry()
    for nelec in range(sym.norb + 1):
        enum = DeterminantEnumerator(sym, nelec)
        assert enum.total == comb(sym.norb, nelec)
        for irrep in range(sym.nirrep):
            strs = enum.strings[irrep]
            assert np.all(np.diff(strs) > 0)
            for s in strs:
                occupied = [i for i in range(sym.norb) if (int(s) >> i) & 1]
                assert len(occupied) == nelec
                assert sym.irrep_of_orbitals(occupied) == irrep


def test_counter_round_trip():
    sym = _c2v_symmetry()
    enum = DeterminantEnumerator(sym, 3)
    for irrep in range(sym.nirrep):
        for counter in range(int(enum.num_per_irrep[irrep])):
            bits = enum.bits(irrep, counter)
            string = bits_to_string(bits)
            assert enum.lookup(string) == (irrep, counter)
            assert np.array_equal(string_to_bits(string, sym.norb), bits)


def test_lookup_of_foreign_strings():
    sym = _c2v_symmetry()
    enum = DeterminantEnumerator(sym, 2)
    assert enum.lookup(0b111) == (-1, -1)
    assert enum.lookup(1 << 40) == (-1, -1)
    with pytest.raises(IndexError):
        enum.bits(0, int(enum.num_per_irrep[0]))


def test_enumerator_preconditions():
    sym = SymmetryTable([0] * 8)
    with pytest.raises(ValueError):
        DeterminantEnumerator(sym, 9)
    with pytest.raises(ValueError):
        DeterminantEnumerator(sym, 2, max_norb=6)


def _jw_excitation(origin: int, crea: int, anni: int) -> tuple[int, int]:
    if not (origin >> anni) & 1:
        return 0, 0
    sign = -1 if bin(origin & ((1 << anni) - 1)).count("1") % 2 else 1
    det = origin ^ (1 << anni)
    if (det >> crea) & 1:
        return 0, 0
    if bin(det & ((1 << crea) - 1)).count("1") % 2:
        sign = -sign
    return sign, det | (1 << crea)


def test_excitation_tables_match_ladder_algebra():
    sym = _c2v_symmetry()
    enum = DeterminantEnumerator(sym, 3)
    tables = build_excitation_tables(enum)
    norb = sym.norb
    for irrep in range(sym.nirrep):
        for d, dest in enumerate(enum.strings[irrep]):
            for p in range(norb):
                for q in range(norb):
                    sign = int(tables.sign[irrep][d, p, q])
                    if sign == 0:
                        # no origin: p empty in dest, or q occupied in dest (p != q)
                        assert not (int(dest) >> p) & 1 or (p != q and (int(dest) >> q) & 1)
                        continue
                    g_old = int(tables.irrep[irrep][d, p, q])
                    origin = int(enum.strings[g_old][int(tables.cnt[irrep][d, p, q])])
                    assert _jw_excitation(origin, p, q) == (sign, int(dest))
