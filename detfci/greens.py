"""Second-quantized operators, one-particle Green's functions and density response.

All amplitudes are evaluated with the shifted-operator CG solver:

``G(omega) = <0| a_i [omega - H + E0 + i eta]^-1 a+_j |0>
          + <0| a+_j [omega + H - E0 + i eta]^-1 a_i |0>``

``X(omega) = <0| dn_i [omega - H + E0 + i eta]^-1 dn_j |0>
          - <0| dn_j [omega + H - E0 + i eta]^-1 dn_i |0>``

with ``dn_k = n_k - <0| n_k |0>``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import math
from typing import Sequence

import numpy as np

from detfci.cg import cg_solve_system


def _check_orb(solver, orb: int, name: str = "orbital") -> int:
    orb = int(orb)
    if not 0 <= orb < int(solver.norb):
        raise ValueError(f"{name} index {orb} out of range for norb={solver.norb}")
    return orb


def act_with_number_operator(solver, orb: int, x: np.ndarray) -> np.ndarray:
    """``(n_orb,up + n_orb,down) x``."""

    orb = _check_orb(solver, orb)
    x = solver.check_vector(x)
    occ_up, occ_down = solver.occupations()
    return (occ_up[:, orb].astype(np.float64) + occ_down[:, orb]) * x


def act_with_second_quantized_operator(solver, op: str, is_up: bool, orb: int, other, other_vec: np.ndarray) -> np.ndarray:
    """Map a state of ``other`` onto the space of ``solver`` with one ladder operator.

    ``op == "C"`` returns ``a+_{orb,spin} |other_vec>`` and requires ``solver``
    to hold one more electron of that spin; ``op == "A"`` returns
    ``a_{orb,spin} |other_vec>`` with one electron fewer. The result is zero
    when the target irreps are not connected by the orbital irrep.
    """

    op = str(op).upper()
    if op not in ("C", "A"):
        raise ValueError(f"operator must be 'C' (creator) or 'A' (annihilator), got {op!r}")
    orb = _check_orb(solver, orb)
    if int(other.norb) != int(solver.norb):
        raise ValueError("both solvers must share the orbital basis")
    is_up = bool(is_up)
    step = 1 if op == "C" else -1
    want_up = int(other.nelec_up) + (step if is_up else 0)
    want_down = int(other.nelec_down) + (0 if is_up else step)
    if (int(solver.nelec_up), int(solver.nelec_down)) != (want_up, want_down):
        raise ValueError(
            f"operator {op!r} maps ({other.nelec_up}, {other.nelec_down}) electrons onto "
            f"({want_up}, {want_down}), but the target solver holds ({solver.nelec_up}, {solver.nelec_down})"
        )
    other_vec = other.check_vector(other_vec)

    addr = solver.addressing
    table = solver.symmetry.table
    target = int(addr.target_irrep)
    result = np.zeros(addr.vec_length(), dtype=np.float64)
    if target != int(table[other.target_irrep, solver.symmetry.orbsym[orb]]):
        return result

    bit = np.int64(1) << np.int64(orb)
    below = bit - np.int64(1)
    o_addr = other.addressing
    o_jumps = o_addr.jumps[int(other.target_irrep)]

    for g in range(addr.nirrep):
        g_down = int(table[g, target])
        nup = int(addr.num_up[g])
        ndown = int(addr.num_down[g_down])
        if nup == 0 or ndown == 0:
            continue
        base = int(addr.jumps[target, g])
        block = result[base : base + nup * ndown].reshape(ndown, nup)
        s_up = solver.enum_up.strings[g]
        s_dn = solver.enum_down.strings[g_down]

        if is_up:
            has = (s_up & bit) != 0
            valid = has if op == "C" else ~has
            s_old = s_up ^ bit
            phase = 1 - 2 * (_popcount(s_up & below) & 1)
            g_old = other.enum_up.irrep_of[s_old[valid]]
            c_old = other.enum_up.counter_of[s_old[valid]]
            c_dn = other.enum_down.counter_of[s_dn]
            loc = (o_jumps[g_old] + c_old)[None, :] + o_addr.num_up[g_old][None, :] * c_dn[:, None]
            block[:, valid] = phase[valid][None, :] * other_vec[loc]
        else:
            has = (s_dn & bit) != 0
            valid = has if op == "C" else ~has
            s_old = s_dn ^ bit
            start = -1 if int(solver.nelec_up) % 2 else 1
            phase = start * (1 - 2 * (_popcount(s_dn & below) & 1))
            g_up_old = int(other.enum_up.irrep_of[s_up[0]])
            c_up = other.enum_up.counter_of[s_up]
            c_old = other.enum_down.counter_of[s_old[valid]]
            stride = int(o_addr.num_up[g_up_old])
            loc = int(o_jumps[g_up_old]) + c_up[None, :] + stride * c_old[:, None]
            block[valid, :] = phase[valid][:, None] * other_vec[loc]

    return result


def _popcount(strings: np.ndarray) -> np.ndarray:
    strings = np.asarray(strings, dtype=np.int64)
    count = np.zeros(strings.shape, dtype=np.int64)
    s = strings.copy()
    while np.any(s):
        count += s & 1
        s >>= 1
    return count


@dataclass
class GFMatrixResult:
    """Green's function block ``values[i, j]`` for left orbital ``i`` and right orbital ``j``.

    The optional 2-RDMs (one per right orbital) belong to the real and
    imaginary CG solutions and to the bare ``a+_j |0>`` or ``a_j |0>`` vector.
    """

    values: np.ndarray
    two_rdm_real: list[np.ndarray] = field(default_factory=list)
    two_rdm_imag: list[np.ndarray] = field(default_factory=list)
    two_rdm_bare: list[np.ndarray] = field(default_factory=list)


def _check_orbs(solver, orbs: Sequence[int], name: str) -> list[int]:
    orbs = [int(o) for o in np.asarray(orbs, dtype=np.int64).ravel()]
    if not orbs:
        raise ValueError(f"{name} must not be empty")
    return [_check_orb(solver, o, name) for o in orbs]


def _gf_matrix(
    solver,
    op: str,
    alpha: float,
    beta: float,
    eta: float,
    orbs_left: Sequence[int],
    orbs_right: Sequence[int],
    is_up: bool,
    gs_vector: np.ndarray,
    integrals,
    with_rdm: bool,
) -> GFMatrixResult:
    left = _check_orbs(solver, orbs_left, "orbs_left")
    right = _check_orbs(solver, orbs_right, "orbs_right")
    gs_vector = solver.check_vector(gs_vector)
    norb = int(solver.norb)
    orbsym = solver.symmetry.orbsym
    values = np.zeros((len(left), len(right)), dtype=np.complex128)
    res = GFMatrixResult(values=values)
    if with_rdm:
        for _ in right:
            res.two_rdm_real.append(np.zeros((norb,) * 4))
            res.two_rdm_imag.append(np.zeros((norb,) * 4))
            res.two_rdm_bare.append(np.zeros((norb,) * 4))

    step = 1 if op == "C" else -1
    nel_spin = int(solver.nelec_up) if is_up else int(solver.nelec_down)
    possible = nel_spin < norb if op == "C" else nel_spin > 0
    if not possible:
        return res

    for j, orb_right in enumerate(right):
        if not any(int(orbsym[o]) == int(orbsym[orb_right]) for o in left):
            continue
        nup = int(solver.nelec_up) + (step if is_up else 0)
        ndown = int(solver.nelec_down) + (0 if is_up else step)
        irrep = int(solver.symmetry.table[solver.target_irrep, orbsym[orb_right]])
        sibling = solver.sibling(nup, ndown, irrep, integrals=integrals)
        try:
            bare = act_with_second_quantized_operator(sibling, op, is_up, orb_right, solver, gs_vector)
            sol = cg_solve_system(sibling, alpha, beta, eta, bare)
            if with_rdm:
                res.two_rdm_real[j] = sibling.fill_2rdm(sol.real)[0]
                res.two_rdm_imag[j] = sibling.fill_2rdm(sol.imag)[0]
                res.two_rdm_bare[j] = sibling.fill_2rdm(bare)[0]
            for i, orb_left in enumerate(left):
                if int(orbsym[orb_left]) != int(orbsym[orb_right]):
                    continue
                vec = act_with_second_quantized_operator(sibling, op, is_up, orb_left, solver, gs_vector)
                values[i, j] = complex(sibling.dot(vec, sol.real), sibling.dot(vec, sol.imag))
        finally:
            sibling.close()
    return res


def gf_matrix_addition(
    solver,
    alpha: float,
    beta: float,
    eta: float,
    orbs_left: Sequence[int],
    orbs_right: Sequence[int],
    is_up: bool,
    gs_vector: np.ndarray,
    integrals=None,
    *,
    with_rdm: bool = False,
) -> GFMatrixResult:
    """``G[i, j] = <0| a_{left[i]} [alpha + beta H + i eta]^-1 a+_{right[j]} |0>``."""

    return _gf_matrix(solver, "C", alpha, beta, eta, orbs_left, orbs_right, is_up, gs_vector, integrals, with_rdm)


def gf_matrix_removal(
    solver,
    alpha: float,
    beta: float,
    eta: float,
    orbs_left: Sequence[int],
    orbs_right: Sequence[int],
    is_up: bool,
    gs_vector: np.ndarray,
    integrals=None,
    *,
    with_rdm: bool = False,
) -> GFMatrixResult:
    """``G[i, j] = <0| a+_{left[i]} [alpha + beta H + i eta]^-1 a_{right[j]} |0>``."""

    return _gf_matrix(solver, "A", alpha, beta, eta, orbs_left, orbs_right, is_up, gs_vector, integrals, with_rdm)


def _scalar(res: GFMatrixResult, with_rdm: bool):
    value = complex(res.values[0, 0])
    if not with_rdm:
        return value
    rdms = {"real": res.two_rdm_real[0], "imag": res.two_rdm_imag[0], "bare": res.two_rdm_bare[0]}
    return value, rdms


def retarded_gf_addition(
    solver,
    omega: float,
    eta: float,
    orb_alpha: int,
    orb_beta: int,
    is_up: bool,
    gs_energy: float,
    gs_vector: np.ndarray,
    integrals=None,
    *,
    with_rdm: bool = False,
):
    """Addition amplitude ``<0| a_alpha [omega - H + E0 + i eta]^-1 a+_beta |0>``.

    Returns a complex number, or ``(value, rdms)`` with the 2-RDMs of the
    real, imaginary and bare vectors when ``with_rdm`` is set.
    """

    res = gf_matrix_addition(
        solver, float(omega) + float(gs_energy), -1.0, eta, [orb_alpha], [orb_beta], is_up, gs_vector, integrals,
        with_rdm=with_rdm,
    )
    return _scalar(res, with_rdm)


def retarded_gf_removal(
    solver,
    omega: float,
    eta: float,
    orb_alpha: int,
    orb_beta: int,
    is_up: bool,
    gs_energy: float,
    gs_vector: np.ndarray,
    integrals=None,
    *,
    with_rdm: bool = False,
):
    """Removal amplitude ``<0| a+_beta [omega + H - E0 + i eta]^-1 a_alpha |0>``."""

    res = gf_matrix_removal(
        solver, float(omega) - float(gs_energy), 1.0, eta, [orb_beta], [orb_alpha], is_up, gs_vector, integrals,
        with_rdm=with_rdm,
    )
    return _scalar(res, with_rdm)


def retarded_gf(
    solver,
    omega: float,
    eta: float,
    orb_alpha: int,
    orb_beta: int,
    is_up: bool,
    gs_energy: float,
    gs_vector: np.ndarray,
    integrals=None,
) -> complex:
    """Retarded one-particle Green's function (addition plus removal amplitude)."""

    value = retarded_gf_addition(solver, omega, eta, orb_alpha, orb_beta, is_up, gs_energy, gs_vector, integrals)
    value += retarded_gf_removal(solver, omega, eta, orb_alpha, orb_beta, is_up, gs_energy, gs_vector, integrals)
    solver.observer.on_event(
        "RetardedGF",
        {"omega": float(omega), "eta": float(eta), "i": int(orb_alpha), "j": int(orb_beta),
         "G": value, "LDOS": -value.imag / math.pi},
    )
    return value


def _density_fluctuation(solver, orb: int, gs_vector: np.ndarray) -> np.ndarray:
    vec = act_with_number_operator(solver, orb, gs_vector)
    mean = solver.dot(vec, gs_vector)
    solver.linalg.axpy(-mean, gs_vector, vec)
    return vec


def _density_amplitude(solver, alpha, beta, eta, orb_bra, orb_ket, gs_vector, with_rdm):
    orb_bra = _check_orb(solver, orb_bra)
    orb_ket = _check_orb(solver, orb_ket)
    gs_vector = solver.check_vector(gs_vector)
    bra = _density_fluctuation(solver, orb_bra, gs_vector)
    ket = bra if orb_bra == orb_ket else _density_fluctuation(solver, orb_ket, gs_vector)
    sol = cg_solve_system(solver, alpha, beta, eta, ket)
    value = complex(solver.dot(bra, sol.real), solver.dot(bra, sol.imag))
    if not with_rdm:
        return value
    rdms = {
        "real": solver.fill_2rdm(sol.real)[0],
        "imag": solver.fill_2rdm(sol.imag)[0],
        "bare": solver.fill_2rdm(ket)[0],
    }
    return value, rdms


def density_response_gf_forward(
    solver,
    omega: float,
    eta: float,
    orb_alpha: int,
    orb_beta: int,
    gs_energy: float,
    gs_vector: np.ndarray,
    *,
    with_rdm: bool = False,
):
    """Forward amplitude ``<0| dn_alpha [omega - H + E0 + i eta]^-1 dn_beta |0>``."""

    return _density_amplitude(
        solver, float(omega) + float(gs_energy), -1.0, eta, orb_alpha, orb_beta, gs_vector, with_rdm
    )


def density_response_gf_backward(
    solver,
    omega: float,
    eta: float,
    orb_alpha: int,
    orb_beta: int,
    gs_energy: float,
    gs_vector: np.ndarray,
    *,
    with_rdm: bool = False,
):
    """Backward amplitude ``<0| dn_beta [omega + H - E0 + i eta]^-1 dn_alpha |0>``."""

    return _density_amplitude(
        solver, float(omega) - float(gs_energy), 1.0, eta, orb_beta, orb_alpha, gs_vector, with_rdm
    )


def density_response_gf(
    solver,
    omega: float,
    eta: float,
    orb_alpha: int,
    orb_beta: int,
    gs_energy: float,
    gs_vector: np.ndarray,
) -> complex:
    """Density-density response: forward minus backward amplitude."""

    value = density_response_gf_forward(solver, omega, eta, orb_alpha, orb_beta, gs_energy, gs_vector)
    value -= density_response_gf_backward(solver, omega, eta, orb_alpha, orb_beta, gs_energy, gs_vector)
    solver.observer.on_event(
        "DensityResponseGF",
        {"omega": float(omega), "eta": float(eta), "i": int(orb_alpha), "j": int(orb_beta),
         "X": value, "LDDR": -value.imag / math.pi},
    )
    return value
