"""Global sparse matrix assembly for FEA.

Assembles element-level matrices into global CSR matrices through a cached
sparsity pattern, and evaluates element kernels in parallel.

Algorithm
---------
1. ``SparsityPattern`` is built once per mesh and DOF layout:
   a. Build the element DOF map: node ``idx`` maps to DOFs
      ``[d*idx, ..., d*idx + d-1]`` for ``d`` DOFs per node.
   b. Expand every element's ``m x m`` block into COO (row, col) pairs.
   c. ``np.unique`` on the linearised keys gives the CSR ``indices`` /
      ``indptr`` and, through ``return_inverse``, a scatter map from every
      element entry to its CSR slot.
2. Each assembly call runs an element kernel over contiguous element chunks
   on a ``ThreadPoolExecutor``.  Every chunk writes only to its own output
   buffer.
3. A single-threaded reduction concatenates the buffers in chunk order and
   sums duplicates with ``np.bincount`` through the scatter map.  The
   summation order is the element order, so the global matrices are
   identical for any worker count.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

import numpy as np
import scipy.sparse as sp
from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class SparsityPattern:
    """CSR pattern for a connectivity and DOF layout, reused every assembly.

    Parameters
    ----------
    connectivity : (E, n) element node indices.
    n_nodes : int
    dofs_per_node : int
        1 for the thermal problem, 3 for the mechanical one.
    """

    def __init__(self, connectivity: NDArray[np.int64], n_nodes: int,
                 dofs_per_node: int = 1) -> None:
        t0 = time.perf_counter()
        conn = np.asarray(connectivity, dtype=np.int64)
        d = dofs_per_node
        self.n_dof = n_nodes * d
        self.dofs_per_node = d
        # dof_map[e] = [d*n0, d*n0+1, ..., d*n1, ...]
        self.dof_map = (conn[:, :, None] * d + np.arange(d)).reshape(conn.shape[0], -1)
        m = self.dof_map.shape[1]
        self.entries_per_element = m * m

        rows = np.repeat(self.dof_map, m, axis=1).ravel()
        cols = np.tile(self.dof_map, (1, m)).ravel()
        keys = rows * self.n_dof + cols
        unique_keys, self.scatter = np.unique(keys, return_inverse=True)
        self.scatter = self.scatter.ravel()
        self.indices = (unique_keys % self.n_dof).astype(np.int32)
        row_of = unique_keys // self.n_dof
        counts = np.bincount(row_of, minlength=self.n_dof)
        self.indptr = np.concatenate([[0], np.cumsum(counts)]).astype(np.int32)
        self.nnz = unique_keys.size
        self._diagonal = self._diagonal_slots()
        logger.debug(
            "Sparsity pattern: %d DOFs, %d non-zeros (%.3f s)",
            self.n_dof, self.nnz, time.perf_counter() - t0,
        )

    def _diagonal_slots(self) -> NDArray[np.int64]:
        slots = np.full(self.n_dof, -1, dtype=np.int64)
        rows = np.repeat(np.arange(self.n_dof), np.diff(self.indptr))
        on_diag = rows == self.indices
        slots[rows[on_diag]] = np.nonzero(on_diag)[0]
        return slots

    def matrix(self, element_matrices: NDArray[np.float64],
               diagonal: Optional[NDArray[np.float64]] = None) -> sp.csr_matrix:
        """Assemble (E, m, m) element matrices, plus an optional extra diagonal."""
        data = np.bincount(
            self.scatter, weights=element_matrices.ravel(), minlength=self.nnz,
        )
        if diagonal is not None:
            data[self._diagonal] += diagonal
        return sp.csr_matrix(
            (data, self.indices, self.indptr), shape=(self.n_dof, self.n_dof),
        )

    def vector(self, element_vectors: NDArray[np.float64]) -> NDArray[np.float64]:
        """Assemble (E, m) element vectors into a global (n_dof,) vector."""
        return np.bincount(
            self.dof_map.ravel(), weights=element_vectors.ravel(), minlength=self.n_dof,
        )


class ParallelAssembler:
    """Evaluate element kernels over contiguous chunks on a per-run worker pool.

    ``kernel(sl)`` receives a ``slice`` of element indices and returns a
    tuple of arrays whose leading axis is the chunk's elements.  The pool is
    owned by this object; call ``close`` (or use it as a context manager)
    when the run ends.
    """

    def __init__(self, n_elements: int, n_workers: int = 1) -> None:
        self.n_elements = n_elements
        self.n_workers = max(1, int(n_workers))
        bounds = np.linspace(0, n_elements, min(self.n_workers, max(n_elements, 1)) + 1)
        bounds = bounds.astype(np.int64)
        self.chunks = [
            slice(int(lo), int(hi)) for lo, hi in zip(bounds[:-1], bounds[1:]) if hi > lo
        ]
        self._executor: Optional[ThreadPoolExecutor] = None
        if self.n_workers > 1 and len(self.chunks) > 1:
            self._executor = ThreadPoolExecutor(
                max_workers=self.n_workers, thread_name_prefix="assembly",
            )

    def map(self, kernel: Callable[[slice], tuple]) -> tuple:
        """Run ``kernel`` on every chunk and concatenate the outputs in chunk order."""
        if self._executor is None:
            parts = [kernel(sl) for sl in self.chunks]
        else:
            futures = [self._executor.submit(kernel, sl) for sl in self.chunks]
            parts = [f.result() for f in futures]
        if len(parts) == 1:
            return tuple(parts[0])
        return tuple(
            np.concatenate([p[i] for p in parts], axis=0) for i in range(len(parts[0]))
        )

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "ParallelAssembler":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
