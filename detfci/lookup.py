from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from detfci.enumerator import DeterminantEnumerator


@dataclass(frozen=True)
class ExcitationTables:
    """Single-excitation lookup tables of one spin channel.

    For destination irrep ``g``, ``cnt[g][d, p, q]``, ``irrep[g][d, p, q]``
    and ``sign[g][d, p, q]`` describe the unique origin determinant ``o`` with
    ``a+_p a_q |o> = sign |d>``. ``sign == 0`` marks entries without an
    origin; their counter is 0 and must not be used.
    """

    cnt: tuple[np.ndarray, ...]  # (n, L, L) int32
    irrep: tuple[np.ndarray, ...]  # (n, L, L) int8
    sign: tuple[np.ndarray, ...]  # (n, L, L) int8

    @property
    def nbytes(self) -> int:
        return int(sum(a.nbytes for tab in (self.cnt, self.irrep, self.sign) for a in tab))


def build_excitation_tables(enum: DeterminantEnumerator) -> ExcitationTables:
    """Tabulate ``E_pq`` for every destination determinant of every irrep.

    The phase of ``a+_p a_q`` acting on the origin is
    ``(-1)**(below_d[p] + below_d[q] - [p < q])`` where ``below_d[r]`` counts
    the occupied orbitals under ``r`` in the destination.
    """

    norb = int(enum.norb)
    sym = enum.symmetry
    orbs = np.arange(norb, dtype=np.int64)
    bit = np.left_shift(np.int64(1), orbs)
    same = orbs[:, None] == orbs[None, :]
    crea_below_anni = (orbs[:, None] < orbs[None, :]).astype(np.int64)
    pair_irrep = sym.table[sym.orbsym[:, None], sym.orbsym[None, :]]

    cnt_tabs: list[np.ndarray] = []
    irrep_tabs: list[np.ndarray] = []
    sign_tabs: list[np.ndarray] = []
    for irrep in range(int(enum.nirrep)):
        strs = enum.strings[irrep]
        occ = np.asarray(enum.occupations[irrep], dtype=np.int64)
        n = int(strs.size)
        if n == 0:
            empty_i32 = np.zeros((0, norb, norb), dtype=np.int32)
            empty_i8 = np.zeros((0, norb, norb), dtype=np.int8)
            for arr in (empty_i32, empty_i8):
                arr.setflags(write=False)
            cnt_tabs.append(empty_i32)
            irrep_tabs.append(empty_i8)
            sign_tabs.append(empty_i8)
            continue

        below = np.cumsum(occ, axis=1) - occ
        valid = (occ[:, :, None] == 1) & (same[None, :, :] | (occ[:, None, :] == 0))

        origin = (strs[:, None, None] & ~bit[None, :, None]) | bit[None, None, :]
        origin_cnt = enum.counter_of[origin]
        if np.any(origin_cnt[valid] < 0):  # pragma: no cover
            raise RuntimeError("internal error: excitation origin missing from the enumerator")

        parity = (below[:, :, None] + below[:, None, :] - crea_below_anni[None, :, :]) & 1
        sign = np.where(valid, 1 - 2 * parity, 0).astype(np.int8)
        cnt = np.where(valid, origin_cnt, 0).astype(np.int32)
        origin_irrep = np.broadcast_to(sym.table[irrep, pair_irrep], (n, norb, norb))
        irr = np.where(valid, origin_irrep, 0).astype(np.int8)

        for arr in (cnt, irr, sign):
            arr.setflags(write=False)
        cnt_tabs.append(cnt)
        irrep_tabs.append(irr)
        sign_tabs.append(sign)

    return ExcitationTables(cnt=tuple(cnt_tabs), irrep=tuple(irrep_tabs), sign=tuple(sign_tabs))
