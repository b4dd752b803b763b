"""
Jacobi-preconditioned conjugate gradient iteration

pcg() drives the device kernels from opencl_pcg.ops. All vectors stay on the
device; only the scalars produced by reductions (r @ z, p @ Ap, norm(r)) are
read back, and those reads are the only points where the host waits for the
command queue.

A near-zero denominator in alpha or beta is not treated as an error: it is
offset by EPS and the iteration continues, possibly producing a degraded
result. Running out of iterations is likewise reported through the returned
PCGResult rather than raised.
"""

from typing import List, NamedTuple
from enum import Enum
import logging

import numpy
import pyopencl
import pyopencl.array

from .csr import CSRMatrix
from .ops import PCGOps


logger = logging.getLogger(__name__)

# Offset added to the alpha and beta denominators
EPS = numpy.float32(1e-20)


class PCGState(Enum):
    INIT = 'init'
    ITERATING = 'iterating'
    CONVERGED = 'converged'
    MAX_ITER_REACHED = 'max_iter_reached'


class PCGResult(NamedTuple):
    state: PCGState
    iterations: int
    residual: float
    initial_residual: float
    residuals: List[float]

    @property
    def converged(self) -> bool:
        return self.state == PCGState.CONVERGED


def pcg(
        ops: PCGOps,
        queue: pyopencl.CommandQueue,
        m: CSRMatrix,
        x: pyopencl.array.Array,
        b: pyopencl.array.Array,
        r: pyopencl.array.Array,
        p: pyopencl.array.Array,
        ap: pyopencl.array.Array,
        z: pyopencl.array.Array,
        max_iters: int,
        tolerance: float,
        ) -> PCGResult:
    """
    Solve m @ x = b in place, starting from the current contents of x.

    Convergence is reached once norm(b - m @ x) < tolerance (an absolute threshold).

    Args:
        ops: Compiled kernels (same context as all the arrays)
        queue: Command queue on which all the arrays live
        m: Device CSR matrix
        x: Initial guess; overwritten with the solution
        b: Right-hand side (read only)
        r: Residual work vector
        p: Search direction work vector
        ap: Work vector for m @ p
        z: Preconditioned residual work vector
        max_iters: Maximum number of iterations
        tolerance: Residual norm below which the solve is considered converged

    Returns:
        PCGResult; x holds the best available solution regardless of its state.
    """
    state = PCGState.INIT

    # r = b - A x
    e = ops.spmv(ap, m, x, [])
    e = ops.residual(r, b, ap, e)

    # z = inv(D) r; p = z
    e = ops.jacobi(z, r, m.diag, e)
    e = [pyopencl.enqueue_copy(queue, p.data, z.data, byte_count=z.nbytes, wait_for=e)]
    rz_old = ops.dot(r, z, e)

    residual = ops.norm(r, [])
    initial_residual = residual
    residuals = [float(residual)]
    logger.debug(f'initial residual {residual:.4}')

    if float(residual) < tolerance:
        return PCGResult(PCGState.CONVERGED, 0, float(residual), float(initial_residual), residuals)

    state = PCGState.ITERATING
    alpha = beta = numpy.float32(0)
    iterations = 0
    for k in range(max_iters):
        iterations = k + 1
        do_print = (k % 100 == 0)
        if do_print:
            logger.debug(f'[{k:06d}] residual {residual:.4} alpha {alpha:.4} beta {beta:.4}')

        e = ops.spmv(ap, m, p, [])
        p_ap = ops.dot(p, ap, e)
        alpha = numpy.float32(rz_old / (p_ap + EPS))

        e = ops.xr_update(x, p, r, ap, alpha, [])
        residual = ops.norm(r, e)
        residuals.append(float(residual))

        if float(residual) < tolerance:
            state = PCGState.CONVERGED
            break

        e = ops.jacobi(z, r, m.diag, [])
        rz_new = ops.dot(r, z, e)
        beta = numpy.float32(rz_new / (rz_old + EPS))
        ops.p_update(p, z, beta, [])
        rz_old = rz_new

        if k % 1000 == 0:
            logger.info(f'iteration {k}')
    else:
        state = PCGState.MAX_ITER_REACHED

    logger.debug(f'{state.name} after {iterations} iterations')
    return PCGResult(state, iterations, float(residual), float(initial_residual), residuals)
