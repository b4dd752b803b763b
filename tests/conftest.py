import pytest
import pyopencl


def _first_device():
    try:
        platforms = pyopencl.get_platforms()
    except pyopencl.Error:
        return None

    for platform in platforms:
        try:
            devices = platform.get_devices()
        except pyopencl.Error:
            continue
        if devices:
            return devices[0]
    return None


@pytest.fixture(scope='session')
def context():
    device = _first_device()
    if device is None:
        pytest.skip('No OpenCL device available')
    return pyopencl.Context([device])


@pytest.fixture
def queue(context):
    return pyopencl.CommandQueue(context)
