"""
Face-addressed sparse systems and their CSR form

This file holds SparseSystem, the lower/upper/diagonal ("LDU") description of
a matrix produced by a finite-volume discretization, and the conversion of
that description into compressed sparse row (CSR) format: first on the host
(build_csr() -> HostCSR), then in device memory (CSRMatrix).

In the LDU convention every mesh face f couples two cells. It contributes
 upper[f] at (lower_addr[f], upper_addr[f]) and
 lower[f] at (upper_addr[f], lower_addr[f]),
so the sparsity pattern is symmetric even when the coefficients are not.
"""

import logging

import numpy
from numpy.typing import NDArray, ArrayLike
import pyopencl.array
import scipy.sparse

from .buffers import DeviceArena
from .errors import ConfigurationError


logger = logging.getLogger(__name__)


class SparseSystem:
    """
    Matrix described by per-face coupling coefficients plus a per-cell diagonal.

    Arrays are stored as given (no copy is made when the input is already an
    ndarray); nothing in opencl_pcg writes to them.
    """
    n_cells: int
    lower_addr: NDArray[numpy.integer]
    upper_addr: NDArray[numpy.integer]
    lower: NDArray[numpy.floating]
    upper: NDArray[numpy.floating]
    diag: NDArray[numpy.floating]

    def __init__(
            self,
            n_cells: int,
            lower_addr: ArrayLike,
            upper_addr: ArrayLike,
            lower: ArrayLike,
            upper: ArrayLike,
            diag: ArrayLike,
            ) -> None:
        self.n_cells = int(n_cells)
        self.lower_addr = numpy.asarray(lower_addr, dtype=numpy.int64).ravel()
        self.upper_addr = numpy.asarray(upper_addr, dtype=numpy.int64).ravel()
        self.lower = numpy.asarray(lower).ravel()
        self.upper = numpy.asarray(upper).ravel()
        self.diag = numpy.asarray(diag).ravel()

    def __repr__(self) -> str:
        return f'SparseSystem(n_cells={self.n_cells}, n_faces={self.n_faces})'

    @property
    def n_faces(self) -> int:
        return self.lower_addr.size

    def check(self) -> None:
        """
        Validate the description.

        Raises:
            ConfigurationError if the cell count, array sizes or face addressing are invalid.
        """
        if self.n_cells < 1:
            raise ConfigurationError(f'n_cells must be positive, got {self.n_cells}')

        if self.diag.size != self.n_cells:
            raise ConfigurationError(f'diag has {self.diag.size} entries, expected {self.n_cells}')

        sizes = {a.size for a in (self.lower_addr, self.upper_addr, self.lower, self.upper)}
        if len(sizes) != 1:
            raise ConfigurationError('lower_addr, upper_addr, lower and upper must all have one entry per face')

        if self.n_faces == 0:
            return

        for name, addr in (('lower_addr', self.lower_addr), ('upper_addr', self.upper_addr)):
            if addr.min() < 0 or addr.max() >= self.n_cells:
                raise ConfigurationError(f'{name} references a cell outside [0, {self.n_cells})')

        if numpy.any(self.lower_addr == self.upper_addr):
            raise ConfigurationError('A face may not connect a cell to itself')

        pairs = numpy.sort(numpy.stack((self.lower_addr, self.upper_addr), axis=1), axis=1)
        if numpy.unique(pairs, axis=0).shape[0] != self.n_faces:
            raise ConfigurationError('Two faces connect the same pair of cells')

    @classmethod
    def from_matrix(cls, A: ArrayLike) -> 'SparseSystem':
        """
        Build a face-addressed system from a square matrix with a structurally
        symmetric pattern.

        Each stored off-diagonal pair {i, j} becomes one face with lower_addr=min(i, j).
        If only one of A[i, j], A[j, i] is stored, the other is recorded as an
        explicit zero.

        Args:
            A: Square matrix (scipy.sparse matrix or dense array)

        Returns:
            Equivalent SparseSystem.
        """
        m = scipy.sparse.csr_matrix(A)
        if m.shape[0] != m.shape[1]:
            raise ConfigurationError(f'Matrix must be square, got shape {m.shape}')

        upper_part = scipy.sparse.triu(m, k=1).tocoo()
        lower_part = scipy.sparse.triu(m.T, k=1).tocoo()
        faces = numpy.concatenate((
            numpy.stack((upper_part.row, upper_part.col), axis=1),
            numpy.stack((lower_part.row, lower_part.col), axis=1),
            ))

        if faces.shape[0] == 0:
            lo = up = numpy.zeros(0, dtype=numpy.int64)
            lower = upper = numpy.zeros(0, dtype=m.dtype)
        else:
            faces = numpy.unique(faces, axis=0)
            lo, up = faces[:, 0], faces[:, 1]
            lower = numpy.asarray(m[up, lo]).ravel()
            upper = numpy.asarray(m[lo, up]).ravel()

        return cls(
            n_cells=m.shape[0],
            lower_addr=lo,
            upper_addr=up,
            lower=lower,
            upper=upper,
            diag=m.diagonal(),
            )


class HostCSR:
    """
    Host-side CSR staging arrays, in the types the device kernels expect.
    """
    row_ptr: NDArray[numpy.int32]
    col_ind: NDArray[numpy.int32]
    data: NDArray[numpy.float32]
    diag: NDArray[numpy.float32]

    def __init__(
            self,
            row_ptr: NDArray[numpy.int32],
            col_ind: NDArray[numpy.int32],
            data: NDArray[numpy.float32],
            diag: NDArray[numpy.float32],
            ) -> None:
        self.row_ptr = row_ptr
        self.col_ind = col_ind
        self.data = data
        self.diag = diag

    @property
    def n(self) -> int:
        return self.row_ptr.size - 1

    @property
    def nnz(self) -> int:
        return int(self.row_ptr[-1])

    def to_scipy(self) -> scipy.sparse.csr_matrix:
        return scipy.sparse.csr_matrix((self.data, self.col_ind, self.row_ptr), shape=(self.n, self.n))


def build_csr(system: SparseSystem) -> HostCSR:
    """
    Convert a face-addressed system into sorted-column CSR.

    Every row receives exactly one diagonal entry (even if no face touches
    it), and zero-valued coefficients are kept, so the structure only depends
    on the face addressing. Values are cast to float32.

    Args:
        system: Matrix to convert. Not modified.

    Returns:
        HostCSR for the system.
    """
    system.check()
    n = system.n_cells
    cells = numpy.arange(n)

    # Non-zeros per row: the diagonal plus one per incident face
    counts = numpy.ones(n, dtype=numpy.int64)
    counts += numpy.bincount(system.lower_addr, minlength=n)
    counts += numpy.bincount(system.upper_addr, minlength=n)

    row_ptr = numpy.zeros(n + 1, dtype=numpy.int64)
    numpy.cumsum(counts, out=row_ptr[1:])

    rows = numpy.concatenate((cells, system.lower_addr, system.upper_addr))
    cols = numpy.concatenate((cells, system.upper_addr, system.lower_addr))
    vals = numpy.concatenate((system.diag, system.upper, system.lower))

    # Row-major, then ascending column within each row
    order = numpy.lexsort((cols, rows))

    host = HostCSR(
        row_ptr=row_ptr.astype(numpy.int32),
        col_ind=cols[order].astype(numpy.int32),
        data=vals[order].astype(numpy.float32),
        diag=system.diag.astype(numpy.float32),
        )
    logger.debug(f'Built CSR: {host.n} rows, {host.nnz} non-zeros')
    return host


class CSRMatrix:
    """
    Matrix stored in Compressed Sparse Row format, in device RAM.

    The arrays belong to the DeviceArena they were uploaded through.
    """
    row_ptr: pyopencl.array.Array
    col_ind: pyopencl.array.Array
    data: pyopencl.array.Array
    diag: pyopencl.array.Array
    n: int
    nnz: int

    def __init__(
            self,
            arena: DeviceArena,
            m: HostCSR,
            prefix: str = 'A',
            ) -> None:
        """
        Copy a HostCSR into arena buffers named '{prefix}.row_ptr', '{prefix}.col_ind', etc.
        Buffers already held under those names are reused or replaced.
        """
        self.n = m.n
        self.nnz = m.nnz
        self.row_ptr = arena.upload(f'{prefix}.row_ptr', m.row_ptr)
        self.col_ind = arena.upload(f'{prefix}.col_ind', m.col_ind)
        self.data = arena.upload(f'{prefix}.data', m.data)
        self.diag = arena.upload(f'{prefix}.diag', m.diag)
