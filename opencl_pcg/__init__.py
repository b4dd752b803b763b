"""
 opencl_pcg OpenCL sparse PCG solver

 opencl_pcg solves the sparse linear systems produced by finite-volume
  discretizations (one unknown per cell, one off-diagonal coupling pair per
  face) using a Jacobi-preconditioned conjugate gradient method implemented
  in Python and OpenCL.

  Its capabilities include:
  - Face-addressed (lower/upper/diagonal) matrix input, or any scipy.sparse
    matrix with a structurally symmetric pattern
  - Conversion to sorted compressed sparse row (CSR) format
  - Device-resident solution, right-hand side, residual and matrix buffers,
    owned by a solver instance and released exactly once
  - Single-precision device arithmetic, with tree reductions for dot products
    and norms

  The default solver (opencl_pcg.LduSolver) keeps its device buffers alive
   between solves, so it can be reused once per outer iteration of a
   pressure-velocity coupling loop. opencl_pcg.pcg_solver(...) is a one-shot
   wrapper for single solves.

  Non-convergence is not an error: the best available solution is returned
   along with the iteration count and residual norm, and the caller decides
   whether that is acceptable.

  Currently, this solver only uses a single GPU or other OpenCL accelerator.


  Dependencies:
    - numpy
    - scipy
    - pyopencl
    - jinja2
"""

from .main import LduSolver, SolverControls, SolveResult, pcg_solver
from .csr import SparseSystem, HostCSR, CSRMatrix, build_csr
from .pcg import PCGState, PCGResult
from .buffers import DeviceArena, live_allocations
from .errors import PCGError, ConfigurationError, ResourceError

from .VERSION import __version__
version = __version__
