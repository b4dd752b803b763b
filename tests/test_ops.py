import pytest
import numpy as np
import pyopencl.array

from opencl_pcg import ops, DeviceArena, SparseSystem, CSRMatrix, build_csr


def to_device(queue, v):
    return pyopencl.array.to_device(queue, np.asarray(v, dtype=np.float32))


def test_jacobi_zero_diagonal(context, queue):
    jacobi = ops.create_jacobi_step(context)
    r = to_device(queue, [2.0, 3.0, -4.0])
    diag = to_device(queue, [2.0, 0.0, 4.0])
    z = pyopencl.array.zeros_like(r)

    jacobi(z, r, diag, [])
    np.testing.assert_array_equal(z.get(), [1.0, 3.0, -1.0])


@pytest.mark.parametrize('n', [1, 7, 300])
def test_spmv(context, queue, n):
    rng = np.random.default_rng(n)
    faces = [(i, i + 1) for i in range(n - 1)] + [(i, i + 3) for i in range(n - 3)]
    system = SparseSystem(
        n_cells=n,
        lower_addr=[f[0] for f in faces],
        upper_addr=[f[1] for f in faces],
        lower=rng.normal(size=len(faces)),
        upper=rng.normal(size=len(faces)),
        diag=rng.uniform(2, 3, size=n),
        )
    host = build_csr(system)
    v = rng.normal(size=n).astype(np.float32)

    spmv = ops.create_a_csr(context)
    with DeviceArena(queue) as arena:
        m = CSRMatrix(arena, host)
        v_in = arena.upload('v', v)
        v_out = arena.allocate('out', n)
        spmv(v_out, m, v_in, [])
        np.testing.assert_allclose(v_out.get(), host.to_scipy() @ v, rtol=1e-5, atol=1e-5)


def test_vector_updates(context, queue):
    xr_update = ops.create_xr_step(context)
    p_update = ops.create_p_step(context)
    residual = ops.create_residual_step(context)

    x = to_device(queue, [1.0, 2.0])
    p = to_device(queue, [1.0, -1.0])
    r = to_device(queue, [0.5, 0.5])
    v = to_device(queue, [2.0, 4.0])
    b = to_device(queue, [3.0, 3.0])
    z = to_device(queue, [1.0, 1.0])

    e = xr_update(x, p, r, v, 0.5, [])
    e = p_update(p, z, 2.0, e)
    residual(z, b, v, e)

    np.testing.assert_allclose(x.get(), [1.5, 1.5])
    np.testing.assert_allclose(r.get(), [-0.5, -1.5])
    np.testing.assert_allclose(p.get(), [3.0, -1.0])
    np.testing.assert_allclose(z.get(), [1.0, -1.0])


@pytest.mark.parametrize('n', [1, 10, 100000])
def test_reductions(context, queue, n):
    rng = np.random.default_rng(n)
    a = rng.normal(size=n).astype(np.float32)
    b = rng.normal(size=n).astype(np.float32)

    dot = ops.create_dot(context)
    norm = ops.create_norm(context)
    a_dev = to_device(queue, a)
    b_dev = to_device(queue, b)

    expected_dot = np.dot(a.astype(np.float64), b.astype(np.float64))
    expected_norm = np.linalg.norm(a.astype(np.float64))

    result_dot = dot(a_dev, b_dev, [])
    result_norm = norm(a_dev, [])
    assert result_dot.dtype == np.float32
    assert result_norm.dtype == np.float32
    assert result_dot == pytest.approx(expected_dot, rel=1e-4, abs=1e-4 * np.sqrt(n))
    assert result_norm == pytest.approx(expected_norm, rel=1e-5)


def test_type_to_C():
    assert ops.type_to_C(np.float32) == 'float'
    for unsupported in (np.float64, np.int32):
        with pytest.raises(Exception):
            ops.type_to_C(unsupported)
