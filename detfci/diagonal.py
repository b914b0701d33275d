from __future__ import annotations

import numpy as np

from detfci.addressing import SectorAddressing
from detfci.enumerator import DeterminantEnumerator
from detfci.threads import run_chunked

# Upper bound on rows * norb**2 doubles held per temporary in the diagonal kernels.
_BLOCK_ELEMENTS = 1 << 20


def sector_occupations(
    addressing: SectorAddressing,
    enum_up: DeterminantEnumerator,
    enum_down: DeterminantEnumerator,
    sector: int,
    start: int,
    stop: int,
) -> tuple[np.ndarray, np.ndarray]:
    """0/1 occupations ``(rows, norb)`` of the up and down strings of rows ``[start, stop)``."""

    norb = int(enum_up.norb)
    rows = int(stop) - int(start)
    occ_up = np.zeros((max(rows, 0), norb), dtype=np.int8)
    occ_down = np.zeros((max(rows, 0), norb), dtype=np.int8)
    table = addressing.symmetry.table
    jumps = addressing.jumps[int(sector)]
    for g, a, b in addressing.block_slices(sector, start, stop):
        local = np.arange(a, b, dtype=np.int64) - int(jumps[g])
        nup = int(addressing.num_up[g])
        occ_up[a - start : b - start] = enum_up.occupations[g][local % nup]
        occ_down[a - start : b - start] = enum_down.occupations[int(table[g, sector])][local // nup]
    return occ_up, occ_down


def _row_block(norb: int) -> int:
    return max(1, _BLOCK_ELEMENTS // max(1, norb * norb))


def diag_rows(gmat: np.ndarray, eri: np.ndarray, occ_up: np.ndarray, occ_down: np.ndarray) -> np.ndarray:
    """``<D|H|D>`` (without constant) for each row of the occupation tables.

    ``sum_a n_a G_aa + 0.5 sum_ab n_a n_b (aa|bb)
    + 0.5 sum_ab (n_a - nu_a nu_b - nd_a nd_b) (ab|ba)``
    """

    nu = np.asarray(occ_up, dtype=np.float64)
    nd = np.asarray(occ_down, dtype=np.float64)
    ntot = nu + nd
    jmat = np.einsum("aabb->ab", eri)
    kmat = np.einsum("abba->ab", eri)
    out = ntot @ np.diag(gmat).copy()
    out += 0.5 * np.einsum("ma,mb,ab->m", ntot, ntot, jmat, optimize=True)
    out += 0.5 * (ntot @ kmat.sum(axis=1))
    out -= 0.5 * np.einsum("ma,mb,ab->m", nu, nu, kmat, optimize=True)
    out -= 0.5 * np.einsum("ma,mb,ab->m", nd, nd, kmat, optimize=True)
    return out


class _SquaredTerms:
    """Determinant-independent tensors of the diagonal of ``H**2``."""

    def __init__(self, gmat: np.ndarray, eri: np.ndarray, orbsym: np.ndarray, table: np.ndarray) -> None:
        norb = int(gmat.shape[0])
        self.norb = norb
        self.mask = (orbsym[:, None] == orbsym[None, :]).astype(np.float64)
        self.gmat = gmat * self.mask
        self.eri_ijkk = np.ascontiguousarray(np.einsum("ijkk->ijk", eri))
        self.eri_ikkj = np.ascontiguousarray(np.einsum("ikkj->ijk", eri))
        self.ksum = self.eri_ikkj.sum(axis=2) * self.mask

        # (a,k,c,i) survives when I(a) x I(k) x I(c) x I(i) == 0.
        pair = table[orbsym[:, None], orbsym[None, :]]
        mask4 = (pair[:, :, None, None] == pair[None, None, :, :]).astype(np.float64)
        eri_akci = eri * mask4
        eri_aick = eri.transpose(0, 3, 2, 1)
        self.quad_a = np.ascontiguousarray((eri_akci * eri_akci).reshape(norb * norb, norb * norb))
        self.quad_b = np.ascontiguousarray((eri_akci * eri_aick).reshape(norb * norb, norb * norb))


def _diag_squared_block(terms: _SquaredTerms, nu: np.ndarray, nd: np.ndarray, linalg) -> np.ndarray:
    mask = terms.mask
    norb = terms.norb
    rows = nu.shape[0]
    ntot = nu + nd

    jmat = np.einsum("ijk,mk->mij", terms.eri_ijkk, ntot, optimize=True) * mask
    kreg_up = np.einsum("ijk,mk->mij", terms.eri_ikkj, nu, optimize=True) * mask
    kreg_dn = np.einsum("ijk,mk->mij", terms.eri_ikkj, nd, optimize=True) * mask
    kbar_up = terms.ksum[None, :, :] - kreg_up
    kbar_dn = terms.ksum[None, :, :] - kreg_dn

    diag_g = np.diag(terms.gmat)
    mean = ntot @ diag_g + 0.5 * (
        np.einsum("mii,mi->m", jmat, ntot)
        + np.einsum("mii,mi->m", kbar_up, nu)
        + np.einsum("mii,mi->m", kbar_dn, nd)
    )
    out = mean * mean

    x_up = nu[:, :, None] * (1.0 - nu[:, None, :])
    x_dn = nd[:, :, None] * (1.0 - nd[:, None, :])
    special = x_up + x_dn
    g_plus_j = terms.gmat[None, :, :] + jmat
    kx_up = (kbar_up - kreg_up) * x_up
    kx_dn = (kbar_dn - kreg_dn) * x_dn
    pq = g_plus_j * (special * g_plus_j + kx_up + kx_dn) + 0.25 * (kx_up * kx_up + kx_dn * kx_dn)
    out += np.einsum("mpq,pq->m", pq, mask)

    sf = special.reshape(rows, norb * norb)
    xu = x_up.reshape(rows, norb * norb)
    xd = x_dn.reshape(rows, norb * norb)
    out += 0.5 * np.einsum("mp,mp->m", linalg.gemm(sf, terms.quad_a), sf)
    out -= 0.5 * np.einsum("mp,mp->m", linalg.gemm(xu, terms.quad_b), xu)
    out -= 0.5 * np.einsum("mp,mp->m", linalg.gemm(xd, terms.quad_b), xd)
    return out


def diag_ham(solver) -> np.ndarray:
    """Diagonal of the Hamiltonian (without constant) over the target sector."""

    addr = solver.addressing
    n = addr.vec_length()
    sector = addr.target_irrep
    block = _row_block(solver.norb)

    def _chunk(a: int, b: int) -> np.ndarray:
        parts = []
        for s in range(a, b, block):
            occ_up, occ_down = sector_occupations(addr, solver.enum_up, solver.enum_down, sector, s, min(b, s + block))
            parts.append(diag_rows(solver.gmat, solver.eri, occ_up, occ_down))
        return np.concatenate(parts)

    ws = solver.workspace
    parts = run_chunked(_chunk, 0, n, executor=ws._ensure_executor(), nthreads=ws.nthreads)
    if not parts:
        return np.zeros(0, dtype=np.float64)
    return np.concatenate(parts)


def diag_ham_squared(solver) -> np.ndarray:
    """Diagonal of ``H**2`` (without constant) over the target sector.

    Wick's theorem applied to ``<D| (g_ij E_ij + 0.5 (ij|kl) E_ij E_kl)**2 |D>``
    leaves a mean-field square, one-body/exchange cross terms over orbital
    pairs of equal irrep and a quartic ``(ak|ci)`` term over symmetry-allowed
    quadruples.
    """

    addr = solver.addressing
    n = addr.vec_length()
    sector = addr.target_irrep
    sym = solver.symmetry
    terms = _SquaredTerms(solver.gmat, solver.eri, sym.orbsym, sym.table)
    block = _row_block(solver.norb)

    def _chunk(a: int, b: int) -> np.ndarray:
        parts = []
        for s in range(a, b, block):
            occ_up, occ_down = sector_occupations(addr, solver.enum_up, solver.enum_down, sector, s, min(b, s + block))
            nu = occ_up.astype(np.float64)
            nd = occ_down.astype(np.float64)
            parts.append(_diag_squared_block(terms, nu, nd, solver.linalg))
        return np.concatenate(parts)

    ws = solver.workspace
    parts = run_chunked(_chunk, 0, n, executor=ws._ensure_executor(), nthreads=ws.nthreads)
    if not parts:
        return np.zeros(0, dtype=np.float64)
    return np.concatenate(parts)


def lowest_energy_determinant(diag: np.ndarray) -> int:
    """Index of the smallest diagonal element (first one on ties)."""

    diag = np.asarray(diag, dtype=np.float64)
    if diag.size == 0:
        raise ValueError("the FCI vector space is empty")
    return int(np.argmin(diag))


def _phase_between(bits: np.ndarray, lo: int, hi: int) -> int:
    """``(-1)**`` occupied orbitals strictly between ``lo`` and ``hi``."""

    a, b = (lo, hi) if lo < hi else (hi, lo)
    return -1 if int(np.sum(bits[a + 1 : b])) % 2 else 1


def get_matrix_element(
    gmat: np.ndarray,
    eri: np.ndarray,
    bra_up,
    bra_down,
    ket_up,
    ket_down,
) -> float:
    """``<bra|H|ket>`` (without constant) by the Slater-Condon rules.

    Determinants are 0/1 occupation arrays per spin. Pairs differing in more
    than two spin-orbitals, or with a different number of up/down electrons,
    give 0.
    """

    bra_up = np.asarray(bra_up, dtype=np.int64).ravel()
    bra_down = np.asarray(bra_down, dtype=np.int64).ravel()
    ket_up = np.asarray(ket_up, dtype=np.int64).ravel()
    ket_down = np.asarray(ket_down, dtype=np.int64).ravel()
    norb = int(gmat.shape[0])
    for name, arr in (("bra_up", bra_up), ("bra_down", bra_down), ("ket_up", ket_up), ("ket_down", ket_down)):
        if arr.size != norb:
            raise ValueError(f"{name} must have {norb} entries, got {arr.size}")

    # annih: occupied in the ket only; creat: occupied in the bra only.
    annih_up = np.flatnonzero((ket_up == 1) & (bra_up == 0))
    creat_up = np.flatnonzero((bra_up == 1) & (ket_up == 0))
    annih_dn = np.flatnonzero((ket_down == 1) & (bra_down == 0))
    creat_dn = np.flatnonzero((bra_down == 1) & (ket_down == 0))
    n_up = int(annih_up.size)
    n_dn = int(annih_dn.size)
    if n_up != int(creat_up.size) or n_dn != int(creat_dn.size):
        return 0.0
    if n_up + n_dn > 2:
        return 0.0

    if n_up == 0 and n_dn == 0:
        return float(diag_rows(gmat, eri, ket_up[None, :], ket_down[None, :])[0])

    ket_tot = ket_up + ket_down
    if n_up + n_dn == 1:
        if n_up == 1:
            j, l, same = int(creat_up[0]), int(annih_up[0]), ket_up
        else:
            j, l, same = int(creat_dn[0]), int(annih_dn[0]), ket_down
        result = float(gmat[j, l])
        result += float(np.dot(eri[j, :, :, l].diagonal(), 0.5 - same))
        result += float(np.dot(np.einsum("oo->o", eri[:, :, j, l]), ket_tot))
        return result * _phase_between(same, j, l)

    if n_up == 2 or n_dn == 2:
        if n_up == 2:
            creat, annih, bra_s, ket_s = creat_up, annih_up, bra_up, ket_up
        else:
            creat, annih, bra_s, ket_s = creat_dn, annih_dn, bra_down, ket_down
        i, j = int(creat[0]), int(creat[1])
        k, l = int(annih[0]), int(annih[1])
        result = float(eri[i, k, j, l] - eri[i, l, j, k])
        return result * _phase_between(ket_s, k, l) * _phase_between(bra_s, i, j)

    i, j = int(creat_up[0]), int(creat_dn[0])
    k, l = int(annih_up[0]), int(annih_dn[0])
    result = float(eri[i, k, j, l])
    return result * _phase_between(ket_up, i, k) * _phase_between(ket_down, j, l)
