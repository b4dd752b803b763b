"""
Basic PyOpenCL operations

The functions are mostly concerned with creating and compiling OpenCL
kernels for use by the PCG solver. Each create_opname(context) returns a
function which enqueues the operation on a command queue, after waiting
for a list of pyopencl.Event, and returns either a list of pyopencl.Event
(elementwise operations) or a host scalar (reductions).

See kernels/ for any of the .cl files loaded in this file.
"""

from typing import List, Callable, NamedTuple, Type
import logging

import numpy
import jinja2

import pyopencl
import pyopencl.array
from pyopencl.elementwise import ElementwiseKernel
from pyopencl.reduction import ReductionKernel


logger = logging.getLogger(__name__)

# Create jinja2 env on module load
jinja_env = jinja2.Environment(loader=jinja2.PackageLoader(__name__, 'kernels'))

# Return type for the create_opname(...) functions
operation = Callable[..., List[pyopencl.Event]]
reduction = Callable[..., numpy.float32]


def type_to_C(
        float_type: Type,
        ) -> str:
    """
    Returns a string corresponding to the C equivalent of a numpy type.

    Args:
        float_type: numpy type: float32

    Returns:
        string containing the corresponding C type (eg. 'float')
    """
    types = {
        numpy.float32: 'float',
    }
    if float_type not in types:
        raise Exception('Unsupported type')

    return types[float_type]

# Solver arithmetic is single precision throughout
dtype = numpy.float32
ctype = type_to_C(dtype)


def ptrs(*args: str) -> List[str]:
    return [ctype + ' *' + s for s in args]


def create_a_csr(context: pyopencl.Context) -> operation:
    """
    Return a function for performing the operation
     (M @ v)
    where M is stored in CSR (compressed sparse row) format.

    The function signature is
     spmv(v_out, m, v_in, e)
    where m is an opencl_pcg.csr.CSRMatrix
    and v_out, v_in are (dense) vectors (of type pyopencl.array.Array).

    Each work-item computes one row, so no reduction across work-items is needed.

    The function waits on all the pyopencl.Event in e before running, and returns
     a list of pyopencl.Event.

    Args:
        context: PyOpenCL context

    Returns:
        Function for sparse (M @ v) operation where M is in CSR format
    """
    spmv_source = jinja_env.get_template('csr_spmv.cl').render(ctype=ctype)

    v_out_args = ctype + ' *v_out'
    m_args = 'int *m_row_ptr, int *m_col_ind, ' + ctype + ' *m_data'
    v_in_args = ctype + ' *v_in'

    spmv_kernel = ElementwiseKernel(
        context,
        name='csr_spmv',
        operation=spmv_source,
        arguments=', '.join((v_out_args, m_args, v_in_args)),
        )

    def spmv(
            v_out: pyopencl.array.Array,
            m,
            v_in: pyopencl.array.Array,
            e: List[pyopencl.Event],
            ) -> List[pyopencl.Event]:
        return [spmv_kernel(v_out, m.row_ptr, m.col_ind, m.data, v_in, wait_for=e)]

    logger.debug(f'csr_spmv: \n{spmv_source}')

    return spmv


def create_residual_step(context: pyopencl.Context) -> operation:
    """
    Return a function
     residual(r, b, v, e)
    which performs the operation
     r = b - v
    (with v = A @ x, this gives the residual)

    after waiting for all in the list e
    and returns a list of pyopencl.Event

    Args:
        context: PyOpenCL context

    Returns:
        Function for computing the residual from a matrix-vector product
    """
    residual_kernel = ElementwiseKernel(
        context,
        name='residual',
        operation='r[i] = b[i] - v[i];',
        arguments=', '.join(ptrs('r', 'b', 'v')),
        )

    def residual(
            r: pyopencl.array.Array,
            b: pyopencl.array.Array,
            v: pyopencl.array.Array,
            e: List[pyopencl.Event],
            ) -> List[pyopencl.Event]:
        return [residual_kernel(r, b, v, wait_for=e)]

    return residual


def create_jacobi_step(context: pyopencl.Context) -> operation:
    """
    Return a function
     jacobi(z, r, diag, e)
    which applies the diagonal (Jacobi) preconditioner
     z = r / diag
    falling back to z = r wherever diag == 0.

    after waiting for all in the list e
    and returns a list of pyopencl.Event

    Args:
        context: PyOpenCL context

    Returns:
        Function for applying the preconditioner
    """
    jacobi_source = jinja_env.get_template('jacobi.cl').render(ctype=ctype)

    jacobi_kernel = ElementwiseKernel(
        context,
        name='jacobi',
        operation=jacobi_source,
        arguments=', '.join(ptrs('z', 'r', 'diag')),
        )

    def jacobi(
            z: pyopencl.array.Array,
            r: pyopencl.array.Array,
            diag: pyopencl.array.Array,
            e: List[pyopencl.Event],
            ) -> List[pyopencl.Event]:
        return [jacobi_kernel(z, r, diag, wait_for=e)]

    logger.debug(f'jacobi: \n{jacobi_source}')

    return jacobi


def create_xr_step(context: pyopencl.Context) -> operation:
    """
    Return a function
     xr_update(x, p, r, v, alpha, e)
    which performs the operations
     x += alpha * p
     r -= alpha * v

    after waiting for all in the list e
    and returns a list of pyopencl.Event

    Args:
        context: PyOpenCL context

    Returns:
        Function for performing x and r updates
    """
    update_xr_source = '''
    x[i] += alpha * p[i];
    r[i] -= alpha * v[i];
    '''

    xr_args = ', '.join(ptrs('x', 'p', 'r', 'v') + [ctype + ' alpha'])

    xr_kernel = ElementwiseKernel(
        context,
        name='XR',
        operation=update_xr_source,
        arguments=xr_args,
        )

    def xr_update(
            x: pyopencl.array.Array,
            p: pyopencl.array.Array,
            r: pyopencl.array.Array,
            v: pyopencl.array.Array,
            alpha: float,
            e: List[pyopencl.Event],
            ) -> List[pyopencl.Event]:
        return [xr_kernel(x, p, r, v, dtype(alpha), wait_for=e)]

    return xr_update


def create_p_step(context: pyopencl.Context) -> operation:
    """
    Return a function
     p_update(p, z, beta, e)
    which performs the operation
     p = z + beta * p

    after waiting for all pyopencl.Event in the list e
    and returns a list of pyopencl.Event

    Args:
        context: PyOpenCL context

    Returns:
        Function for performing the p update
    """
    update_p_source = '''
    p[i] = z[i] + beta * p[i];
    '''
    p_args = ptrs('p', 'z') + [ctype + ' beta']

    p_kernel = ElementwiseKernel(
        context,
        name='P',
        operation=update_p_source,
        arguments=', '.join(p_args),
        )

    def p_update(
            p: pyopencl.array.Array,
            z: pyopencl.array.Array,
            beta: float,
            e: List[pyopencl.Event]) -> List[pyopencl.Event]:
        return [p_kernel(p, z, dtype(beta), wait_for=e)]

    return p_update


def create_dot(context: pyopencl.Context) -> reduction:
    """
    Return a function for performing the dot product
     p @ v
    with the signature
     dot(p, v, e) -> float32

    The partial sums are combined as a tree on the device, so the result
     does not depend on the order in which work-groups finish.

    Args:
        context: PyOpenCL context

    Returns:
        Function for performing the dot product
    """
    dot_kernel = ReductionKernel(
        context,
        name='dot',
        dtype_out=dtype,
        neutral='0',
        map_expr='p[i] * v[i]',
        reduce_expr='a + b',
        arguments=', '.join(ptrs('p', 'v')),
        )

    def dot(
            p: pyopencl.array.Array,
            v: pyopencl.array.Array,
            e: List[pyopencl.Event],
            ) -> numpy.float32:
        g = dot_kernel(p, v, wait_for=e)
        return dtype(g.get())

    return dot


def create_norm(context: pyopencl.Context) -> reduction:
    """
    Return a function for computing the Euclidean norm
     sqrt(r @ r)
    with the signature
     norm(r, e) -> float32

    Args:
        context: PyOpenCL context

    Returns:
        Function for computing the norm
    """
    err_kernel = ReductionKernel(
        context,
        name='norm2',
        dtype_out=dtype,
        neutral='0',
        map_expr='r[i] * r[i]',
        reduce_expr='a + b',
        arguments=ctype + ' *r',
        )

    def norm(r: pyopencl.array.Array, e: List[pyopencl.Event]) -> numpy.float32:
        err2 = err_kernel(r, wait_for=e).get()
        return numpy.sqrt(dtype(err2))

    return norm


class PCGOps(NamedTuple):
    """
    Compiled kernels needed by opencl_pcg.pcg.pcg(), all for one context.
    """
    spmv: operation
    residual: operation
    jacobi: operation
    xr_update: operation
    p_update: operation
    dot: reduction
    norm: reduction


def create_pcg_ops(context: pyopencl.Context) -> PCGOps:
    """
    Compile every kernel used by the PCG solver.

    Args:
        context: PyOpenCL context

    Returns:
        PCGOps bundle
    """
    return PCGOps(
        spmv=create_a_csr(context),
        residual=create_residual_step(context),
        jacobi=create_jacobi_step(context),
        xr_update=create_xr_step(context),
        p_update=create_p_step(context),
        dot=create_dot(context),
        norm=create_norm(context),
        )
