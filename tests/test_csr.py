import pytest
import numpy as np
import scipy.sparse

from opencl_pcg import SparseSystem, build_csr, ConfigurationError


def random_system(n, n_faces, seed=0):
    rng = np.random.default_rng(seed)
    pairs = set()
    while len(pairs) < n_faces:
        i, j = rng.integers(0, n, size=2)
        if i != j:
            pairs.add((min(i, j), max(i, j)))

    # Mix face orientations so lower_addr > upper_addr also occurs
    faces = [(j, i) if k % 3 == 0 else (i, j) for k, (i, j) in enumerate(sorted(pairs))]
    lower_addr = np.array([f[0] for f in faces], dtype=int)
    upper_addr = np.array([f[1] for f in faces], dtype=int)
    return SparseSystem(
        n_cells=n,
        lower_addr=lower_addr,
        upper_addr=upper_addr,
        lower=rng.normal(size=n_faces),
        upper=rng.normal(size=n_faces),
        diag=rng.uniform(1, 5, size=n),
        )


def dense_from_faces(system):
    A = np.diag(system.diag.astype(np.float32))
    for lo, up, l_coeff, u_coeff in zip(system.lower_addr, system.upper_addr, system.lower, system.upper):
        A[lo, up] = np.float32(u_coeff)
        A[up, lo] = np.float32(l_coeff)
    return A


def chain(n):
    return SparseSystem(
        n_cells=n,
        lower_addr=np.arange(n - 1),
        upper_addr=np.arange(1, n),
        lower=-np.ones(n - 1),
        upper=-np.ones(n - 1),
        diag=2 * np.ones(n),
        )


@pytest.mark.parametrize(['n', 'n_faces'], [(1, 0), (2, 1), (5, 0), (5, 7), (17, 40), (64, 200)])
def test_matches_dense_assembly(n, n_faces):
    system = random_system(n, n_faces, seed=n)
    host = build_csr(system)
    np.testing.assert_array_equal(host.to_scipy().toarray(), dense_from_faces(system))


@pytest.mark.parametrize('seed', range(5))
def test_row_structure(seed):
    system = random_system(30, 60, seed=seed)
    host = build_csr(system)

    assert host.row_ptr[0] == 0
    assert host.row_ptr[-1] == host.nnz == 30 + 2 * 60
    assert np.all(np.diff(host.row_ptr) >= 1)

    for r in range(host.n):
        cols = host.col_ind[host.row_ptr[r]:host.row_ptr[r + 1]]
        vals = host.data[host.row_ptr[r]:host.row_ptr[r + 1]]
        assert np.all(np.diff(cols) > 0)
        assert np.count_nonzero(cols == r) == 1
        assert vals[cols == r][0] == host.diag[r]


def test_dtypes():
    host = build_csr(chain(4))
    assert host.row_ptr.dtype == np.int32
    assert host.col_ind.dtype == np.int32
    assert host.data.dtype == np.float32
    assert host.diag.dtype == np.float32


def test_isolated_cell_keeps_diagonal():
    system = SparseSystem(3, [0], [1], [-1.0], [-1.0], [2.0, 2.0, 7.0])
    host = build_csr(system)
    np.testing.assert_array_equal(host.row_ptr, [0, 2, 4, 5])
    assert host.col_ind[4] == 2
    assert host.data[4] == 7.0


def test_zero_coefficients_are_kept():
    system = SparseSystem(3, [0, 1], [1, 2], [0.0, -1.0], [0.0, -1.0], [1.0, 0.0, 1.0])
    host = build_csr(system)
    assert host.nnz == 3 + 2 * 2
    np.testing.assert_array_equal(host.col_ind, [0, 1, 0, 1, 2, 1, 2])
    np.testing.assert_array_equal(host.data, [1, 0, 0, 0, -1, -1, 1])


def test_asymmetric_values():
    system = SparseSystem(2, [0], [1], [-3.0], [-5.0], [1.0, 1.0])
    A = build_csr(system).to_scipy().toarray()
    assert A[0, 1] == -5.0
    assert A[1, 0] == -3.0


def test_does_not_modify_input():
    system = random_system(10, 15)
    before = [a.copy() for a in (system.lower_addr, system.upper_addr, system.lower, system.upper, system.diag)]
    build_csr(system)
    after = (system.lower_addr, system.upper_addr, system.lower, system.upper, system.diag)
    for b, a in zip(before, after):
        np.testing.assert_array_equal(a, b)


@pytest.mark.parametrize(['args', 'message'], [
    ((0, [], [], [], [], []), 'n_cells'),
    ((2, [0], [1], [1.0], [1.0], [1.0]), 'diag'),
    ((2, [0], [1], [1.0, 2.0], [1.0], [1.0, 1.0]), 'one entry per face'),
    ((2, [0], [2], [1.0], [1.0], [1.0, 1.0]), 'outside'),
    ((2, [-1], [1], [1.0], [1.0], [1.0, 1.0]), 'outside'),
    ((2, [1], [1], [1.0], [1.0], [1.0, 1.0]), 'itself'),
    ((3, [0, 1], [1, 0], [1.0, 1.0], [1.0, 1.0], [1.0, 1.0, 1.0]), 'same pair'),
])
def test_invalid_systems(args, message):
    with pytest.raises(ConfigurationError, match=message):
        build_csr(SparseSystem(*args))


def test_from_matrix():
    A = scipy.sparse.csr_matrix(np.array([
        [4.0, -1.0, 0.0, 0.0],
        [-2.0, 4.0, -1.0, 0.0],
        [0.0, -1.0, 4.0, 0.0],
        [0.0, 0.0, 0.0, 3.0],
        ]))
    system = SparseSystem.from_matrix(A)
    assert system.n_cells == 4
    assert system.n_faces == 2
    np.testing.assert_array_equal(system.lower_addr, [0, 1])
    np.testing.assert_array_equal(system.upper_addr, [1, 2])
    np.testing.assert_array_equal(system.upper, [-1.0, -1.0])
    np.testing.assert_array_equal(system.lower, [-2.0, -1.0])
    np.testing.assert_array_equal(build_csr(system).to_scipy().toarray(), A.toarray())


def test_from_matrix_one_sided_entry():
    A = np.array([
        [2.0, 0.5],
        [0.0, 2.0],
        ])
    system = SparseSystem.from_matrix(A)
    assert system.n_faces == 1
    host = build_csr(system)
    assert host.nnz == 4
    np.testing.assert_array_equal(host.to_scipy().toarray(), A)


def test_from_matrix_diagonal_only():
    system = SparseSystem.from_matrix(scipy.sparse.identity(3))
    assert system.n_faces == 0
    assert build_csr(system).nnz == 3


def test_from_matrix_not_square():
    with pytest.raises(ConfigurationError):
        SparseSystem.from_matrix(np.ones((2, 3)))
