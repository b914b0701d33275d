from __future__ import annotations

import math

import numpy as np

from detfci.symmetry import SymmetryTable

_INT64_MAX = int(np.iinfo(np.int64).max)
# loc (int64), value and weight per gathered lookup entry
_GATHER_WORDS = 3


class SectorAddressing:
    """Flat addressing of (up, down) determinant products per sector.

    A sector is labelled by its total irrep ``t``. Within a sector the
    up-irrep blocks are concatenated in irrep order and an element sits at
    ``jumps[t][g] + cnt_up + num_up[g] * cnt_down`` with down irrep
    ``g x t``. The center irrep ``c`` of a pair ``(i <= j)`` with
    ``I(i) x I(j) == c`` addresses the sector ``c x target``.
    """

    def __init__(
        self,
        symmetry: SymmetryTable,
        num_up: np.ndarray,
        num_down: np.ndarray,
        target_irrep: int,
        *,
        max_memory_mb: float,
    ) -> None:
        nirrep = int(symmetry.nirrep)
        target_irrep = int(target_irrep)
        if not 0 <= target_irrep < nirrep:
            raise ValueError(f"target irrep must lie in [0, {nirrep}), got {target_irrep}")
        if not float(max_memory_mb) > 0.0:
            raise ValueError(f"max_memory_mb must be > 0, got {max_memory_mb}")

        self.symmetry = symmetry
        self.nirrep = nirrep
        self.target_irrep = target_irrep
        self.num_up = np.asarray(num_up, dtype=np.int64)
        self.num_down = np.asarray(num_down, dtype=np.int64)

        table = symmetry.table
        self.jumps = np.zeros((nirrep, nirrep + 1), dtype=np.int64)
        for t in range(nirrep):
            acc = 0
            for g in range(nirrep):
                block = int(self.num_up[g]) * int(self.num_down[int(table[g, t])])
                acc += block
                if acc > _INT64_MAX:
                    raise ValueError(f"sector {t} vector length exceeds the int64 range")
                self.jumps[t, g + 1] = acc
        self.jumps.setflags(write=False)

        norb = int(symmetry.norb)
        self.pairs: list[np.ndarray] = []
        for center in range(nirrep):
            plist = [
                (i, j)
                for i in range(norb)
                for j in range(i, norb)
                if int(table[symmetry.orbsym[i], symmetry.orbsym[j]]) == center
            ]
            arr = np.asarray(plist, dtype=np.int64).reshape(-1, 2)
            arr.setflags(write=False)
            self.pairs.append(arr)

        full = 0
        for center in range(nirrep):
            full = max(full, int(self.pairs[center].shape[0]) * self.vec_length(self.center_target(center)))
        self.workspace_full = int(full)
        cap = int(math.ceil(float(max_memory_mb) * 1e6 / (2 * 8)))
        # A tile holds at least one row of the widest center.
        widest = max(int(p.shape[0]) for p in self.pairs)
        self.workspace_size = max(1, widest, min(self.workspace_full, cap))

    def center_target(self, center: int) -> int:
        return int(self.symmetry.table[int(center), self.target_irrep])

    def vec_length(self, sector: int | None = None) -> int:
        """Length of the sector with total irrep ``sector`` (default: target)."""

        t = self.target_irrep if sector is None else int(sector)
        return int(self.jumps[t, self.nirrep])

    def ndirected(self, center: int) -> int:
        """Directed excitations ``(i, j)`` and ``(j, i)`` of a center's pairs."""

        pairs = self.pairs[int(center)]
        return 2 * int(pairs.shape[0]) - int(np.count_nonzero(pairs[:, 0] == pairs[:, 1]))

    def tile_rows(self, center: int) -> int:
        """Rows of one Hamiltonian-product tile for a center irrep.

        A row costs ``npairs`` elements of each scratch tile and about
        ``_GATHER_WORDS`` words per gathered lookup entry (two spins per
        directed excitation) while it is processed; both fit in
        ``workspace_size``.
        """

        npairs = int(self.pairs[int(center)].shape[0])
        if npairs == 0:
            return max(1, self.workspace_size)
        row = max(npairs, _GATHER_WORDS * 2 * self.ndirected(center))
        return max(1, self.workspace_size // row)

    def up_irrep_of(self, sector: int, index: np.ndarray | int) -> np.ndarray:
        jumps = self.jumps[int(sector)]
        return np.searchsorted(jumps, np.asarray(index, dtype=np.int64), side="right") - 1

    def decode(self, sector: int, index: np.ndarray | int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Split flat indices into ``(irrep_up, cnt_up, cnt_down)``."""

        idx = np.asarray(index, dtype=np.int64)
        n = self.vec_length(sector)
        if idx.size and (int(idx.min()) < 0 or int(idx.max()) >= n):
            raise IndexError(f"index out of range for sector {sector} of length {n}")
        g = self.up_irrep_of(sector, idx)
        local = idx - self.jumps[int(sector)][g]
        nup = self.num_up[g]
        return g, local % nup, local // nup

    def block_slices(self, sector: int, start: int, stop: int):
        """Yield ``(g, a, b)`` for the up-irrep blocks overlapping ``[start, stop)``."""

        jumps = self.jumps[int(sector)]
        for g in range(self.nirrep):
            a = max(int(start), int(jumps[g]))
            b = min(int(stop), int(jumps[g + 1]))
            if a < b:
                yield g, a, b
