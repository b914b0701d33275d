from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import threading
import time

import numpy as np

from detfci.addressing import SectorAddressing
from detfci.linalg import LinAlg
from detfci.lookup import ExcitationTables
from detfci.observer import FCIObserver, NullObserver
from detfci.threads import run_chunked


@dataclass
class HamiltonianWorkspace:
    """Reusable scratch tiles for :class:`HamiltonianEngine`.

    Notes
    -----
    Instances are safe to reuse across repeated products, but not safe to
    share between concurrent products; :attr:`lock` serializes them.
    """

    size: int
    nthreads: int = 1
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    work1: np.ndarray | None = field(default=None, repr=False)
    work2: np.ndarray | None = field(default=None, repr=False)
    executor: ThreadPoolExecutor | None = field(default=None, repr=False)

    def _ensure_tiles(self) -> tuple[np.ndarray, np.ndarray]:
        size = int(self.size)
        if self.work1 is None or int(self.work1.size) < size:
            self.work1 = np.empty(size, dtype=np.float64)
        if self.work2 is None or int(self.work2.size) < size:
            self.work2 = np.empty(size, dtype=np.float64)
        return self.work1, self.work2

    def _ensure_executor(self) -> ThreadPoolExecutor | None:
        nthreads = int(self.nthreads)
        if nthreads <= 1:
            return None
        if self.executor is None:
            self.executor = ThreadPoolExecutor(max_workers=nthreads, thread_name_prefix="detfci")
        return self.executor

    def shutdown(self) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=True)
            self.executor = None

    @property
    def nbytes(self) -> int:
        return 2 * 8 * int(self.size)


@dataclass(frozen=True)
class _CenterPlan:
    """Pair data of one center irrep.

    Directed excitations are the ``(i, j)`` entries of every pair followed by
    the transposed ``(j, i)`` entries of the off-diagonal pairs; ``col`` maps
    each directed entry back to its pair.
    """

    npairs: int
    crea: np.ndarray
    anni: np.ndarray
    col: np.ndarray
    offdiag: np.ndarray
    eri_half: np.ndarray  # (npairs, npairs) = 0.5 * (p1|p2)
    g_pairs: np.ndarray | None  # (npairs,) for center 0


class HamiltonianEngine:
    """Knowles-Handy Hamiltonian-vector product on sector-blocked FCI vectors.

    ``H = sum_ij G_ij E_ij + 0.5 * sum_ijkl (ij|kl) E_ij E_kl``; the constant
    energy is left to the caller. For every center irrep the intermediate
    ``W1[m, p] = <m| E_p |x>`` over pairs ``p = (i <= j)`` (with
    ``E_p = E_ij + E_ji`` off the diagonal) is contracted with the pair block
    of the two-electron integrals and scattered back through the same lookup
    entries.
    """

    def __init__(
        self,
        addressing: SectorAddressing,
        tables_up: ExcitationTables,
        tables_down: ExcitationTables,
        gmat: np.ndarray,
        eri: np.ndarray,
        *,
        linalg: LinAlg,
        workspace: HamiltonianWorkspace,
        observer: FCIObserver | None = None,
    ) -> None:
        self.addressing = addressing
        self.tables_up = tables_up
        self.tables_down = tables_down
        self.linalg = linalg
        self.workspace = workspace
        self.observer = NullObserver() if observer is None else observer
        self.table = addressing.symmetry.table
        self.orbsym = addressing.symmetry.orbsym

        self.plans: list[_CenterPlan] = []
        for center in range(addressing.nirrep):
            pairs = addressing.pairs[center]
            i = pairs[:, 0]
            j = pairs[:, 1]
            off = np.flatnonzero(i != j)
            npairs = int(pairs.shape[0])
            eri_half = 0.5 * eri[i[:, None], j[:, None], i[None, :], j[None, :]]
            self.plans.append(
                _CenterPlan(
                    npairs=npairs,
                    crea=np.concatenate([i, j[off]]),
                    anni=np.concatenate([j, i[off]]),
                    col=np.concatenate([np.arange(npairs, dtype=np.int64), off]),
                    offdiag=off,
                    eri_half=np.ascontiguousarray(eri_half),
                    g_pairs=np.ascontiguousarray(gmat[i, j]) if center == 0 else None,
                )
            )

    # ------------------------------------------------------------------
    # Lookup gathering
    # ------------------------------------------------------------------

    def _entries(self, center: int, start: int, stop: int) -> tuple[np.ndarray, np.ndarray]:
        """Origin locations and signs of the directed excitations for rows
        ``[start, stop)`` of the center's sector.

        Returns ``(loc, sign)`` of shape ``(rows, 2 * ndirected)``: up-spin
        columns first, then down-spin columns. Entries without an origin carry
        sign 0 and location 0.
        """

        addr = self.addressing
        plan = self.plans[center]
        sector = addr.center_target(center)
        jumps = addr.jumps[sector]
        zero_jumps = addr.jumps[addr.target_irrep]
        crea = plan.crea[None, :]
        anni = plan.anni[None, :]
        nd = int(plan.crea.size)

        loc = np.empty((stop - start, 2 * nd), dtype=np.int64)
        sign = np.empty((stop - start, 2 * nd), dtype=np.int8)
        for g, a, b in addr.block_slices(sector, start, stop):
            rows = slice(a - start, b - start)
            local = np.arange(a, b, dtype=np.int64) - int(jumps[g])
            nup = int(addr.num_up[g])
            cnt_up = (local % nup)[:, None]
            cnt_down = (local // nup)[:, None]
            g_down = int(self.table[g, sector])

            # E^alpha: the origin keeps the down string, up irrep moves by the center.
            g_old = int(self.table[g, center])
            sign[rows, :nd] = self.tables_up.sign[g][cnt_up, crea, anni]
            loc[rows, :nd] = self.tables_up.cnt[g][cnt_up, crea, anni]
            loc[rows, :nd] += int(zero_jumps[g_old]) + int(addr.num_up[g_old]) * cnt_down

            # E^beta: the origin keeps the up string and its irrep.
            sign[rows, nd:] = self.tables_down.sign[g_down][cnt_down, crea, anni]
            loc[rows, nd:] = self.tables_down.cnt[g_down][cnt_down, crea, anni]
            loc[rows, nd:] *= nup
            loc[rows, nd:] += int(zero_jumps[g]) + cnt_up

        loc[sign == 0] = 0
        return loc, sign

    # ------------------------------------------------------------------
    # Hamiltonian-vector product
    # ------------------------------------------------------------------

    def _tile_chunk(
        self,
        center: int,
        tile_start: int,
        start: int,
        stop: int,
        x: np.ndarray,
        out: np.ndarray,
        w1: np.ndarray,
        w2: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Gather and contract rows ``[start, stop)``; returns the scatter
        targets and weights for the caller to add into ``out``."""

        plan = self.plans[center]
        npairs = plan.npairs
        nd = int(plan.crea.size)
        rows = stop - start
        r0 = (start - tile_start) * npairs
        work1 = w1[r0 : r0 + rows * npairs].reshape(rows, npairs)
        work2 = w2[r0 : r0 + rows * npairs].reshape(rows, npairs)

        loc, sign = self._entries(center, start, stop)
        vals = x[loc]
        vals *= sign
        np.add(vals[:, :npairs], vals[:, nd : nd + npairs], out=work1)
        if plan.offdiag.size:
            work1[:, plan.offdiag] += vals[:, npairs:nd] + vals[:, nd + npairs :]

        if plan.g_pairs is not None:
            # Center 0 rows are rows of the output sector itself.
            out[start:stop] += work1 @ plan.g_pairs

        work2[:] = self.linalg.gemm(work1, plan.eri_half)
        spread = work2[:, plan.col]
        np.multiply(sign[:, :nd], spread, out=vals[:, :nd])
        np.multiply(sign[:, nd:], spread, out=vals[:, nd:])
        return loc, vals

    def matvec(self, x: np.ndarray, out: np.ndarray | None = None) -> np.ndarray:
        """Return ``H x`` without the constant energy term.

        Scratch memory stays within the workspace budget apart from one tile
        row of the widest center; ``out`` must not overlap ``x``.
        """

        addr = self.addressing
        n = addr.vec_length()
        x = np.asarray(x, dtype=np.float64).ravel()
        if int(x.size) != n:
            raise ValueError(f"vector has length {x.size}, expected {n}")
        if out is None:
            out = np.zeros(n, dtype=np.float64)
        else:
            if out.shape != (n,) or out.dtype != np.float64:
                raise ValueError(f"out must be a float64 vector of length {n}")
            if np.shares_memory(out, x):
                raise ValueError("out must not share memory with x")
            self.linalg.fill_zero(out)
        if n == 0:
            return out

        t0 = time.perf_counter()
        ws = self.workspace
        with ws.lock:
            w1, w2 = ws._ensure_tiles()
            executor = ws._ensure_executor()
            for center in range(addr.nirrep):
                plan = self.plans[center]
                if plan.npairs == 0:
                    continue
                local_len = addr.vec_length(addr.center_target(center))
                tile = addr.tile_rows(center)
                for tile_start in range(0, local_len, tile):
                    tile_stop = min(local_len, tile_start + tile)

                    def _chunk(a: int, b: int, _c=center, _t=tile_start) -> tuple[np.ndarray, np.ndarray]:
                        return self._tile_chunk(_c, _t, a, b, x, out, w1, w2)

                    # Chunks of one tile share targets, so the scatter is serial.
                    for loc, weights in run_chunked(_chunk, tile_start, tile_stop, executor=executor, nthreads=ws.nthreads):
                        np.add.at(out, loc.ravel(), weights.ravel())
        self.observer.on_matvec(time.perf_counter() - t0)
        return out

    # ------------------------------------------------------------------
    # Single excitation between sectors
    # ------------------------------------------------------------------

    def apply_excitation(self, x: np.ndarray, crea: int, anni: int, orig_sector: int) -> np.ndarray:
        """Apply ``E_{crea,anni}`` (both spins) to a vector of sector ``orig_sector``.

        Returns the vector in sector ``I(crea) x I(anni) x orig_sector``.
        """

        addr = self.addressing
        norb = int(self.orbsym.size)
        crea = int(crea)
        anni = int(anni)
        if not (0 <= crea < norb and 0 <= anni < norb):
            raise ValueError(f"orbital indices ({crea}, {anni}) out of range for norb={norb}")
        orig_sector = int(orig_sector)
        if not 0 <= orig_sector < addr.nirrep:
            raise ValueError(f"sector irrep {orig_sector} out of range")
        x = np.asarray(x, dtype=np.float64).ravel()
        if int(x.size) != addr.vec_length(orig_sector):
            raise ValueError(f"vector has length {x.size}, expected {addr.vec_length(orig_sector)}")

        pair_irrep = addr.symmetry.pair_irrep(crea, anni)
        result_sector = addr.symmetry.product(pair_irrep, orig_sector)
        result = np.zeros(addr.vec_length(result_sector), dtype=np.float64)
        if result.size == 0 or x.size == 0:
            return result

        for g in range(addr.nirrep):
            g_down = int(self.table[g, result_sector])
            nup = int(addr.num_up[g])
            ndown = int(addr.num_down[g_down])
            if nup == 0 or ndown == 0:
                continue
            base = int(addr.jumps[result_sector, g])
            block = result[base : base + nup * ndown].reshape(ndown, nup)

            # Up-spin excitation: whole columns (fixed up string) move.
            sign = self.tables_up.sign[g][:, crea, anni]
            valid = sign != 0
            if np.any(valid):
                g_old = int(self.table[g, pair_irrep])
                nup_old = int(addr.num_up[g_old])
                base_old = int(addr.jumps[orig_sector, g_old])
                orig = x[base_old : base_old + nup_old * ndown].reshape(ndown, nup_old)
                cnt = self.tables_up.cnt[g][valid, crea, anni]
                block[:, valid] += sign[valid][None, :] * orig[:, cnt]

            # Down-spin excitation: whole rows (fixed down string) move.
            sign = self.tables_down.sign[g_down][:, crea, anni]
            valid = sign != 0
            if np.any(valid):
                g_down_old = int(self.table[g, orig_sector])
                ndown_old = int(addr.num_down[g_down_old])
                base_old = int(addr.jumps[orig_sector, g])
                orig = x[base_old : base_old + nup * ndown_old].reshape(ndown_old, nup)
                cnt = self.tables_down.cnt[g_down][valid, crea, anni]
                block[valid, :] += sign[valid][:, None] * orig[cnt, :]

        return result
