"""
Default PCG solver

This file holds LduSolver, which owns the device state for repeatedly solving
systems of one size (eg. once per outer iteration of a pressure-velocity
coupling loop), and pcg_solver(), a one-shot wrapper around it.
"""

from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Union
import math
import time
import weakref
import logging

import numpy
from numpy.typing import NDArray, ArrayLike
from numpy.linalg import norm
import pyopencl

from . import ops
from .buffers import DeviceArena
from .csr import SparseSystem, CSRMatrix, build_csr
from .errors import ConfigurationError, ResourceError
from .pcg import PCGState, pcg


logger = logging.getLogger(__name__)


class SolverControls(NamedTuple):
    max_iters: int = 1000
    tolerance: float = 1e-6

    @classmethod
    def from_dict(cls, opts: Optional[Mapping[str, Any]] = None) -> 'SolverControls':
        """
        Read solver controls from a dict, using defaults for missing entries.

        Besides `max_iters` and `tolerance`, the finite-volume solver-dictionary
         spelling `maxIter` is accepted.

        Raises:
            ConfigurationError for unknown keys or invalid values.
        """
        if opts is None:
            opts = {}

        aliases = {'maxIter': 'max_iters'}
        kwargs = {}
        for key, value in opts.items():
            name = aliases.get(key, key)
            if name not in cls._fields:
                raise ConfigurationError(f'Unknown solver control {key!r}')
            if name in kwargs:
                raise ConfigurationError(f'Solver control {name!r} given more than once')
            kwargs[name] = value

        controls = cls(**kwargs)
        controls.check()
        return controls

    def check(self) -> None:
        if isinstance(self.max_iters, bool) or not isinstance(self.max_iters, (int, numpy.integer)):
            raise ConfigurationError(f'max_iters must be an integer, got {self.max_iters!r}')
        if self.max_iters <= 0:
            raise ConfigurationError(f'max_iters must be positive, got {self.max_iters}')
        try:
            tolerance = float(self.tolerance)
        except (TypeError, ValueError):
            raise ConfigurationError(f'tolerance must be a number, got {self.tolerance!r}') from None
        if not math.isfinite(tolerance) or tolerance <= 0:
            raise ConfigurationError(f'tolerance must be positive and finite, got {self.tolerance}')


class SolveResult(NamedTuple):
    solution: NDArray[numpy.float64]
    iterations: int
    residual: float
    initial_residual: float
    state: PCGState
    residuals: List[float]

    @property
    def converged(self) -> bool:
        return self.state == PCGState.CONVERGED


class LduSolver:
    """
    Device-resident Jacobi-PCG solver for face-addressed systems with n_cells unknowns.

    The solver exclusively owns its device buffers and compiled kernels. They
     are released by close(), on leaving a `with` block, or when the solver is
     garbage collected, whichever happens first; release happens exactly once.

    One instance runs one solve at a time; it is not safe to share across threads.
    """
    n_cells: int
    context: pyopencl.Context
    queue: pyopencl.CommandQueue
    arena: DeviceArena
    matrix: Optional[CSRMatrix]

    def __init__(
            self,
            n_cells: int,
            context: Optional[pyopencl.Context] = None,
            queue: Optional[pyopencl.CommandQueue] = None,
            ) -> None:
        """
        Args:
            n_cells: Number of unknowns (matrix rows)
            context: PyOpenCL context. Will be created if not given.
            queue: PyOpenCL command queue (in-order). Will be created if not given.

        Raises:
            ConfigurationError if n_cells is not a positive integer.
            ResourceError if device memory cannot be allocated.
        """
        if isinstance(n_cells, bool) or not isinstance(n_cells, (int, numpy.integer)) or n_cells < 1:
            raise ConfigurationError(f'n_cells must be a positive integer, got {n_cells!r}')
        self.n_cells = int(n_cells)

        if context is None:
            context = pyopencl.create_some_context(interactive=False) if queue is None else queue.context

        if queue is None:
            queue = pyopencl.CommandQueue(context)

        self.context = context
        self.queue = queue
        self.matrix = None
        self._host_matrix = None

        self.arena = DeviceArena(queue)
        self._finalizer = weakref.finalize(self, self.arena.release)
        try:
            self._ops: Optional[ops.PCGOps] = ops.create_pcg_ops(context)
            for name in ('x', 'b', 'r'):
                self.arena.allocate(name, self.n_cells, ops.dtype)
        except BaseException:
            self.close()
            raise

        logger.info(f'Device initialization complete: {self.n_cells} cells, '
                    f'{self.arena.nbytes / 2**20:.3f} MB device memory allocated')

    def __enter__(self) -> 'LduSolver':
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return not self._finalizer.alive

    def close(self) -> None:
        """
        Release all device buffers and kernels. Safe to call repeatedly.
        """
        self._finalizer()
        self._ops = None
        self.matrix = None
        self._host_matrix = None

    def _check_open(self) -> None:
        if self.closed:
            raise ResourceError('Solver has been closed')

    def load_matrix(self, system: SparseSystem) -> CSRMatrix:
        """
        Convert system to CSR and copy it to the device, replacing any previous matrix.

        Args:
            system: Matrix to load; must have n_cells rows. Not modified.

        Returns:
            The device CSRMatrix.
        """
        self._check_open()
        if system.n_cells != self.n_cells:
            raise ConfigurationError(f'System has {system.n_cells} cells, solver was built for {self.n_cells}')

        host = build_csr(system)
        self.matrix = None
        self.matrix = CSRMatrix(self.arena, host)
        self._host_matrix = host
        logger.debug(f'Loaded matrix: {host.n} rows, {host.nnz} non-zeros')
        return self.matrix

    def _load_vector(self, name: str, v: Optional[ArrayLike]) -> NDArray[numpy.float32]:
        if v is None:
            h = numpy.zeros(self.n_cells, dtype=ops.dtype)
        else:
            h = numpy.array(v, dtype=ops.dtype).ravel()
        if h.size != self.n_cells:
            raise ConfigurationError(f'{name} has {h.size} entries, expected {self.n_cells}')
        return h

    def solve(
            self,
            system: SparseSystem,
            rhs: ArrayLike,
            x0: Optional[ArrayLike] = None,
            max_iters: int = 1000,
            tolerance: float = 1e-6,
            ) -> SolveResult:
        """
        Solve system @ x = rhs.

        The matrix is rebuilt and re-uploaded on every call. Single precision is used
         on the device, so the accuracy attainable is limited accordingly.

        Args:
            system: Matrix to solve
            rhs: Right-hand side vector (length n_cells)
            x0: Initial guess (length n_cells). Default zeros.
            max_iters: Maximum number of iterations. Default 1000.
            tolerance: Absolute residual-norm threshold for success. Default 1e-6.

        Returns:
            SolveResult; the solution is returned even if the solve did not converge.

        Raises:
            ConfigurationError for invalid inputs (before any device work).
            ResourceError if the solver is closed or device memory runs out.
        """
        start_time = time.perf_counter()

        self._check_open()
        SolverControls(max_iters, tolerance).check()
        if system.n_cells != self.n_cells:
            raise ConfigurationError(f'System has {system.n_cells} cells, solver was built for {self.n_cells}')
        b_host = self._load_vector('rhs', rhs)
        x_host = self._load_vector('x0', x0)

        '''
        Load data onto the device
        '''
        try:
            m = self.load_matrix(system)
            x = self.arena.upload('x', x_host)
            b = self.arena.upload('b', b_host)
            r = self.arena['r']

            '''
            Start the solve
            '''
            start_time2 = time.perf_counter()

            with self.arena.scratch('p', 'Ap', 'z', n=self.n_cells, dtype=ops.dtype) as (p, ap, z):
                result = pcg(self._ops, self.queue, m, x, b, r, p, ap, z,
                             max_iters=max_iters, tolerance=tolerance)
        except ResourceError:
            # Out of device memory; this instance is no longer usable
            self.close()
            raise
        except pyopencl.MemoryError as err:
            # Deferred allocation failed at kernel launch
            self.close()
            raise ResourceError('Device memory exhausted during solve') from err

        '''
        Done solving
        '''
        solution = x.get(queue=self.queue).astype(numpy.float64)
        time_elapsed = time.perf_counter() - start_time
        k = result.iterations

        if result.state == PCGState.CONVERGED:
            logger.info('Solve success')
        else:
            logger.warning('Solve failure')
        logger.info(f'{k} iterations in {time_elapsed} sec: {k / time_elapsed} iterations/sec')
        logger.debug(f'final residual {result.residual}')
        logger.debug(f'overhead {start_time2 - start_time} sec')

        if logger.isEnabledFor(logging.DEBUG):
            b_norm = norm(b_host)
            if b_norm > 0:
                residual = norm(self._host_matrix.to_scipy() @ solution - b_host) / b_norm
                logger.debug(f'Post-everything relative residual: {residual}')

        return SolveResult(
            solution=solution,
            iterations=k,
            residual=result.residual,
            initial_residual=result.initial_residual,
            state=result.state,
            residuals=result.residuals,
            )


def pcg_solver(
        A: Union[SparseSystem, ArrayLike],
        b: ArrayLike,
        x0: Optional[ArrayLike] = None,
        solver_opts: Optional[Dict[str, Any]] = None,
        context: Optional[pyopencl.Context] = None,
        ) -> SolveResult:
    """
    One-shot Jacobi-PCG solve of A @ x = b on an OpenCL device.

    Args:
        A: Matrix to solve: a SparseSystem, or a scipy.sparse / dense matrix with a
            structurally symmetric pattern.
        b: Right-hand side vector
        x0: Initial guess. Default zeros.
        solver_opts: Solver controls, passed to SolverControls.from_dict(...).
            Default {}.
        context: PyOpenCL context. Will be created if not given.

    Returns:
        SolveResult; the solution is returned even if the solve did not converge.
    """
    controls = SolverControls.from_dict(solver_opts)

    if isinstance(A, SparseSystem):
        system = A
    else:
        system = SparseSystem.from_matrix(A)

    with LduSolver(system.n_cells, context=context) as solver:
        return solver.solve(system, b, x0, **controls._asdict())
