"""
Device memory bookkeeping

A DeviceArena owns every device buffer a solver instance allocates. Buffers
are looked up by name, are never shared between arenas, and are freed exactly
once: either explicitly (free(), release(), leaving a scratch() block) or when
the arena itself is released.
"""

from typing import Dict, Iterator, List, Optional, Type
from contextlib import contextmanager
import logging

import numpy
from numpy.typing import ArrayLike
import pyopencl
import pyopencl.array

from .errors import ResourceError


logger = logging.getLogger(__name__)

# Number of device buffers currently held by all arenas in this process
_live_allocations = 0


def live_allocations() -> int:
    """
    Returns:
        Number of device buffers currently held by all DeviceArena instances.
    """
    return _live_allocations


def _track(delta: int) -> None:
    global _live_allocations
    _live_allocations += delta


class DeviceArena:
    """
    Named, exclusively-owned device buffers tied to one command queue.
    """
    queue: pyopencl.CommandQueue
    _buffers: Dict[str, pyopencl.array.Array]

    def __init__(self, queue: pyopencl.CommandQueue) -> None:
        self.queue = queue
        self._buffers = {}

    def __enter__(self) -> 'DeviceArena':
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

    def __contains__(self, name: str) -> bool:
        return name in self._buffers

    def __getitem__(self, name: str) -> pyopencl.array.Array:
        try:
            return self._buffers[name]
        except KeyError:
            raise ResourceError(f'No device buffer named {name!r}') from None

    def __len__(self) -> int:
        return len(self._buffers)

    @property
    def nbytes(self) -> int:
        """
        Total size of all held buffers, in bytes.
        """
        return sum(a.nbytes for a in self._buffers.values())

    def allocate(
            self,
            name: str,
            n: int,
            dtype: Type = numpy.float32,
            ) -> pyopencl.array.Array:
        """
        Reserve an uninitialized device array of n elements under the given name.
        Any buffer previously held under that name is freed first.

        Args:
            name: Buffer name
            n: Number of elements
            dtype: Element type. Default float32.

        Returns:
            The new device array.

        Raises:
            ResourceError if the device cannot satisfy the allocation.
        """
        self.free(name)
        try:
            arr = pyopencl.array.empty(self.queue, n, dtype)
        except pyopencl.Error as err:
            raise ResourceError(f'Failed to allocate {name!r} ({n} x {numpy.dtype(dtype).name})') from err
        self._buffers[name] = arr
        _track(+1)
        return arr

    def upload(
            self,
            name: str,
            host: ArrayLike,
            dtype: Optional[Type] = None,
            ) -> pyopencl.array.Array:
        """
        Copy a host array to the device buffer with the given name.

        An existing buffer is reused if its shape and dtype match; otherwise it
        is freed and a new one allocated.

        Args:
            name: Buffer name
            host: Host data (1D)
            dtype: Cast host data to this type before copying. Default: keep host dtype.

        Returns:
            The device array holding a copy of host.
        """
        h = numpy.ascontiguousarray(host, dtype=dtype)

        arr = self._buffers.get(name)
        if arr is None or arr.shape != h.shape or arr.dtype != h.dtype:
            arr = self.allocate(name, h.size, h.dtype)

        try:
            arr.set(h, queue=self.queue)
        except pyopencl.Error as err:
            self.free(name)
            raise ResourceError(f'Failed to upload {name!r} ({h.nbytes} bytes)') from err
        return arr

    def free(self, name: str) -> None:
        """
        Free the named buffer. Does nothing if no such buffer is held.
        """
        arr = self._buffers.pop(name, None)
        if arr is None:
            return
        if arr.base_data is not None:
            arr.base_data.release()
        _track(-1)

    def release(self) -> None:
        """
        Free every held buffer. Safe to call repeatedly.
        """
        if self._buffers:
            logger.debug(f'Releasing {len(self._buffers)} device buffers ({self.nbytes} bytes)')
        for name in list(self._buffers):
            self.free(name)

    @contextmanager
    def scratch(
            self,
            *names: str,
            n: int,
            dtype: Type = numpy.float32,
            ) -> Iterator[List[pyopencl.array.Array]]:
        """
        Allocate temporary buffers for the duration of a `with` block:

            with arena.scratch('p', 'Ap', 'z', n=n) as (p, ap, z):
                ...

        The buffers are freed when the block exits, including on exceptions.
        """
        try:
            yield [self.allocate(name, n, dtype) for name in names]
        finally:
            for name in names:
                self.free(name)
