from __future__ import annotations

import time

import numpy as np

_BLOCK_ELEMENTS = 1 << 20


class SingleExcitationCache:
    """All ``E_pq |x>`` of one vector, stacked per center irrep.

    ``rows[c]`` holds the ``(p, q)`` pairs with ``I(p) x I(q) == c`` and
    ``vectors[c]`` the matching ``(npairs, len)`` matrix of excited vectors in
    the sector ``c x target``.
    """

    def __init__(self, solver, x: np.ndarray) -> None:
        addr = solver.addressing
        sym = solver.symmetry
        norb = int(solver.norb)
        target = int(addr.target_irrep)
        pair_irrep = sym.table[sym.orbsym[:, None], sym.orbsym[None, :]]

        self.norb = norb
        self.center = np.asarray(pair_irrep, dtype=np.int64)
        self.index = np.full((norb, norb), -1, dtype=np.int64)
        self.rows: list[np.ndarray] = []
        self.vectors: list[np.ndarray] = []
        for c in range(addr.nirrep):
            p, q = np.nonzero(pair_irrep == c)
            pq = np.stack([p, q], axis=1).astype(np.int64)
            self.index[p, q] = np.arange(p.size, dtype=np.int64)
            mat = np.zeros((p.size, addr.vec_length(addr.center_target(c))), dtype=np.float64)
            for row in range(p.size):
                mat[row] = solver.engine.apply_excitation(x, int(p[row]), int(q[row]), target)
            self.rows.append(pq)
            self.vectors.append(mat)

    def get(self, p: int, q: int) -> np.ndarray:
        return self.vectors[int(self.center[p, q])][int(self.index[p, q])]


def _two_rdm_domain(norb: int, orbsym: np.ndarray, table: np.ndarray) -> np.ndarray:
    """Mask of the ``[crea2, crea1, anni2, anni1]`` entries evaluated explicitly."""

    o = np.arange(norb)
    pair = table[orbsym[:, None], orbsym[None, :]]
    i = o[:, None, None, None]
    j = o[None, :, None, None]
    k = o[None, None, :, None]
    l = o[None, None, None, :]
    return (j >= l) & (i >= l) & (k >= l) & (pair[j, l] == pair[i, k])


def _three_rdm_domain(norb: int, orbsym: np.ndarray, table: np.ndarray) -> np.ndarray:
    """Mask of the ``[crea3, crea2, crea1, anni3, anni2, anni1]`` entries evaluated explicitly."""

    o = np.arange(norb)
    shape = [1] * 6
    ax = []
    for pos in range(6):
        s = list(shape)
        s[pos] = norb
        ax.append(o.reshape(s))
    i, j, k, l, m, n = ax
    irr = [orbsym[a] for a in ax]
    prod = table[table[table[table[irr[2], irr[5]], irr[1]], irr[4]], irr[0]]
    return (k >= n) & (j >= n) & (m >= n) & (i >= j) & (l >= n) & (prod == irr[3])


def fill_2rdm(solver, x: np.ndarray) -> tuple[np.ndarray, float]:
    """Spin-summed 2-RDM and the energy evaluated from it.

    ``Gamma[i, j, k, l] = <E_ik E_jl> - delta_jk <E_il>``. Entries with
    ``l <= j``, ``l <= i`` and ``l <= k`` are evaluated as overlaps of cached
    single excitations; the rest follows from
    ``Gamma_ijkl = Gamma_jilk = Gamma_klij = Gamma_lkji``.

    Returns
    -------
    two_rdm : np.ndarray
        ``(norb,)*4`` array.
    energy : float
        ``E_const + sum_ij (G_ij + 0.5 sum_k (ik|kj)) sum_k Gamma_ikjk / (N-1)
        + 0.5 sum_ijkl Gamma_ijkl (ik|jl)``.
    """

    nelec = int(solver.nelec_up) + int(solver.nelec_down)
    if nelec < 2:
        raise ValueError(f"the 2-RDM needs at least 2 electrons, got {nelec}")
    x = solver.check_vector(x)
    t0 = time.perf_counter()

    norb = int(solver.norb)
    sym = solver.symmetry
    cache = SingleExcitationCache(solver, x)

    # overlap[p, q, r, s] = <x| E_qp E_rs |x>
    overlap = np.zeros((norb,) * 4, dtype=np.float64)
    for pq, mat in zip(cache.rows, cache.vectors):
        if pq.shape[0] == 0:
            continue
        gram = solver.linalg.gemm(mat, mat, trans_b=True)
        p = pq[:, 0]
        q = pq[:, 1]
        overlap[p[:, None], q[:, None], p[None, :], q[None, :]] = gram

    one = np.zeros((norb, norb), dtype=np.float64)
    p0, q0 = cache.rows[0][:, 0], cache.rows[0][:, 1]
    if p0.size:
        one[p0, q0] = cache.vectors[0] @ x

    two_rdm = overlap.transpose(1, 2, 0, 3).copy()
    eye = np.eye(norb)
    two_rdm -= np.einsum("jk,il->ijkl", eye, one)
    domain = _two_rdm_domain(norb, sym.orbsym, sym.table)
    two_rdm[~domain] = 0.0

    c2, c1, a2, a1 = np.nonzero(domain)
    values = two_rdm[c2, c1, a2, a1]
    two_rdm[c1, c2, a1, a2] = values
    two_rdm[a2, a1, c2, c1] = values
    two_rdm[a1, a2, c1, c2] = values

    energy = energy_from_2rdm(two_rdm, solver.gmat, solver.eri, solver.econst, nelec)
    solver.observer.on_event("Fill2RDM", {"wall_time": time.perf_counter() - t0, "energy": energy})
    return two_rdm, energy


def energy_from_2rdm(two_rdm: np.ndarray, gmat: np.ndarray, eri: np.ndarray, econst: float, nelec: int) -> float:
    nelec = int(nelec)
    if nelec < 2:
        raise ValueError(f"the 2-RDM needs at least 2 electrons, got {nelec}")
    one_body = gmat + 0.5 * np.einsum("ikkj->ij", eri)
    partial = np.einsum("ikjk->ij", two_rdm)
    energy = float(econst)
    energy += float(np.sum(one_body * partial)) / (nelec - 1.0)
    energy += 0.5 * float(np.einsum("ijkl,ikjl->", two_rdm, eri))
    return energy


def one_rdm_from_two(two_rdm: np.ndarray, nelec: int) -> np.ndarray:
    """Spin-summed 1-RDM ``<E_ij> = sum_k Gamma_ikjk / (N - 1)``."""

    nelec = int(nelec)
    if nelec < 2:
        raise ValueError(f"the 2-RDM needs at least 2 electrons, got {nelec}")
    two_rdm = np.asarray(two_rdm, dtype=np.float64)
    if two_rdm.ndim != 4 or len(set(two_rdm.shape)) != 1:
        raise ValueError(f"two_rdm must have shape (L, L, L, L), got {two_rdm.shape}")
    return np.einsum("ikjk->ij", two_rdm) / (nelec - 1.0)


# Images of [c3, c2, c1, a3, a2, a1] under the particle permutations and
# the bra/ket swap.
_THREE_RDM_IMAGES = (
    (1, 0, 2, 4, 3, 5),
    (1, 2, 0, 4, 5, 3),
    (0, 2, 1, 3, 5, 4),
    (2, 0, 1, 5, 3, 4),
    (2, 1, 0, 5, 4, 3),
    (3, 4, 5, 0, 1, 2),
    (4, 3, 5, 1, 0, 2),
    (4, 5, 3, 1, 2, 0),
    (3, 5, 4, 0, 2, 1),
    (5, 3, 4, 2, 0, 1),
    (5, 4, 3, 2, 1, 0),
)


def fill_3rdm(solver, x: np.ndarray) -> np.ndarray:
    """Spin-summed 3-RDM ``Gamma[i, j, k, l, m, n]``.

    ``Gamma_ijk,lmn = <E_il E_jm E_kn> - delta_kl <E_jm E_in> - delta_jl <E_im E_kn>
    - delta_km <E_il E_jn> + delta_kl delta_im <E_jn> + delta_jl delta_km <E_in>``
    """

    nelec = int(solver.nelec_up) + int(solver.nelec_down)
    if nelec < 3:
        raise ValueError(f"the 3-RDM needs at least 3 electrons, got {nelec}")
    x = solver.check_vector(x)
    t0 = time.perf_counter()

    norb = int(solver.norb)
    addr = solver.addressing
    sym = solver.symmetry
    table = sym.table
    target = int(addr.target_irrep)
    cache = SingleExcitationCache(solver, x)
    three = np.zeros((norb,) * 6, dtype=np.float64)

    for anni1 in range(norb):
        for crea1 in range(anni1, norb):
            center1 = int(cache.center[crea1, anni1])
            sector1 = int(table[center1, target])
            w1 = cache.get(crea1, anni1)

            if center1 == 0:
                value = solver.linalg.dot(w1, x)
                for m in range(anni1, norb):
                    for l in range(anni1, norb):
                        three[m, crea1, l, l, m, anni1] += value
                        three[crea1, l, m, l, m, anni1] += value

            for crea2 in range(anni1, norb):
                for anni2 in range(anni1, norb):
                    center2 = int(cache.center[crea2, anni2])
                    w2 = solver.engine.apply_excitation(w1, crea2, anni2, sector1)
                    if w2.size == 0:
                        continue

                    if center1 == center2:
                        value = solver.linalg.dot(w2, x)
                        orbs = np.arange(anni1, norb)
                        three[crea1, crea2, orbs, orbs, anni2, anni1] -= value
                        three[crea2, orbs, crea1, orbs, anni2, anni1] -= value
                        three[crea2, crea1, orbs, anni2, orbs, anni1] -= value

                    center3 = int(table[center1, center2])
                    pq = cache.rows[center3]
                    if pq.shape[0] == 0:
                        continue
                    # <x| E_c3a3 |w2> = (E_a3c3 x) . w2
                    anni3 = pq[:, 0]
                    crea3 = pq[:, 1]
                    keep = (crea3 >= crea2) & (anni3 >= anni1)
                    if not np.any(keep):
                        continue
                    values = cache.vectors[center3][keep] @ w2
                    three[crea3[keep], crea2, crea1, anni3[keep], anni2, anni1] += values

    domain = _three_rdm_domain(norb, sym.orbsym, table)
    idx = np.nonzero(domain)
    values = three[idx]
    for perm in _THREE_RDM_IMAGES:
        three[tuple(idx[p] for p in perm)] = values

    solver.observer.on_event("Fill3RDM", {"wall_time": time.perf_counter() - t0})
    return three


def calc_spin_squared(solver, x: np.ndarray) -> float:
    """``<x| S^2 |x>`` from the diagonal ``Sz`` terms and the spin-flip products."""

    x = solver.check_vector(x)
    addr = solver.addressing
    table = solver.symmetry.table
    orbsym = solver.symmetry.orbsym
    norb = int(solver.norb)
    target = int(addr.target_irrep)
    jumps0 = addr.jumps[target]
    tab_up = solver.tables_up
    tab_dn = solver.tables_down
    orbs = np.arange(norb)
    iu, ju = np.triu_indices(norb, k=1)
    pair_irrep = table[orbsym[iu], orbsym[ju]]
    block = max(1, _BLOCK_ELEMENTS // max(1, iu.size))

    result = 0.0
    for g, a, b in addr.block_slices(target, 0, addr.vec_length()):
        g_down = int(table[g, target])
        nup = int(addr.num_up[g])
        g_bis = table[g, pair_irrep]
        base_bis = jumps0[g_bis][None, :]
        stride_bis = addr.num_up[g_bis][None, :]
        for s in range(a, b, block):
            e = min(b, s + block)
            local = np.arange(s, e, dtype=np.int64) - int(jumps0[g])
            cu = local % nup
            cd = local // nup
            xs = x[s:e]
            weight = xs * xs

            diff = (tab_up.sign[g][cu][:, orbs, orbs].astype(np.int64)
                    - tab_dn.sign[g_down][cd][:, orbs, orbs].astype(np.int64))
            tot = diff.sum(axis=1)
            sq = (diff * diff).sum(axis=1)
            result += float(np.dot(0.75 * sq + 0.25 * (tot * tot - sq), weight))
            if iu.size == 0:
                continue

            cu2 = cu[:, None]
            cd2 = cd[:, None]
            for up_c, up_a, dn_c, dn_a in ((iu, ju, ju, iu), (ju, iu, iu, ju)):
                sign = (tab_up.sign[g][cu2, up_c, up_a].astype(np.int64)
                        * tab_dn.sign[g_down][cd2, dn_c, dn_a].astype(np.int64))
                loc = (base_bis + tab_up.cnt[g][cu2, up_c, up_a]
                       + stride_bis * tab_dn.cnt[g_down][cd2, dn_c, dn_a])
                loc = np.where(sign != 0, loc, 0)
                result -= float(np.sum(sign * x[loc] * xs[:, None]))

    intended = abs(0.5 * int(solver.nelec_up) - 0.5 * int(solver.nelec_down))
    solver.observer.on_event(
        "CalcSpinSquared",
        {"intended_S": intended, "measured_S(S+1)": result, "intended_S(S+1)": intended * (intended + 1.0)},
    )
    return result
