"""Small model Hamiltonians and an independent second-quantization reference."""

from __future__ import annotations

import numpy as np

from detfci import FCIConfig, FCISolver, Integrals


def random_integrals(norb: int, *, orbsym=None, seed: int = 0, ecore: float = 0.37, nirrep=None) -> Integrals:
    rng = np.random.default_rng(seed)
    orbsym = np.zeros(norb, dtype=np.int64) if orbsym is None else np.asarray(orbsym, dtype=np.int64)

    h1e = rng.normal(size=(norb, norb))
    h1e = 0.5 * (h1e + h1e.T) + np.diag(np.arange(norb, dtype=np.float64))
    h1e[orbsym[:, None] != orbsym[None, :]] = 0.0

    eri = 0.1 * rng.normal(size=(norb,) * 4)
    eri = eri + eri.transpose(1, 0, 2, 3)
    eri = eri + eri.transpose(0, 1, 3, 2)
    eri = eri + eri.transpose(2, 3, 0, 1)
    o = orbsym
    forbidden = (o[:, None, None, None] ^ o[None, :, None, None] ^ o[None, None, :, None] ^ o[None, None, None, :]) != 0
    eri[forbidden] = 0.0
    return Integrals(h1e, eri, orbsym=orbsym, ecore=ecore, nirrep=nirrep)


def hubbard_dimer(u: float = 4.0, t: float = 1.0) -> Integrals:
    h1e = np.array([[0.0, -t], [-t, 0.0]])
    eri = np.zeros((2,) * 4)
    eri[0, 0, 0, 0] = u
    eri[1, 1, 1, 1] = u
    return Integrals(h1e, eri)


def make_solver(integrals: Integrals, nup: int, ndown: int, target: int = 0, **config) -> FCISolver:
    cfg = FCIConfig(**config)
    return FCISolver(integrals, nup, ndown, target, config=cfg)


def _apply_ops(det: int, ops) -> tuple[int, int]:
    """Apply ``[(spin_orbital, is_creator), ...]`` right to left; Jordan-Wigner phases."""

    sign = 1
    for p, dagger in reversed(ops):
        occupied = (det >> p) & 1
        if bool(occupied) == bool(dagger):
            return 0, 0
        if bin(det & ((1 << p) - 1)).count("1") % 2:
            sign = -sign
        det ^= 1 << p
    return sign, det


def reference_hamiltonian(solver: FCISolver) -> np.ndarray:
    """Dense Hamiltonian (without constant) of the solver's target sector.

    Up spin-orbitals come first (``i``), down spin-orbitals follow
    (``norb + i``); determinants are ordered as in the solver's vector.
    """

    ints = solver.integrals
    norb = solver.norb
    n = solver.vec_length()
    dets = []
    for idx in range(n):
        up, down = solver.bits_of_counter(0, idx)
        dets.append(sum(1 << i for i in range(norb) if up[i]) | sum(1 << (norb + i) for i in range(norb) if down[i]))
    where = {d: k for k, d in enumerate(dets)}

    ham = np.zeros((n, n))
    offsets = (0, norb)
    for col, ket in enumerate(dets):
        for s in offsets:
            for i in range(norb):
                for j in range(norb):
                    if ints.tmat[i, j] == 0.0:
                        continue
                    sign, det = _apply_ops(ket, [(s + i, True), (s + j, False)])
                    if sign and det in where:
                        ham[where[det], col] += sign * ints.tmat[i, j]
        for s in offsets:
            for t in offsets:
                for i in range(norb):
                    for j in range(norb):
                        for k in range(norb):
                            for l in range(norb):
                                v = ints.eri[i, j, k, l]
                                if v == 0.0:
                                    continue
                                ops = [(s + i, True), (t + k, True), (t + l, False), (s + j, False)]
                                sign, det = _apply_ops(ket, ops)
                                if sign and det in where:
                                    ham[where[det], col] += 0.5 * sign * v
    return ham
