# SPDX-FileCopyrightText: Copyright (c) 2026 The Histfusion Developers
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Storage residency strategy for voxel data.

A :class:`MemoryBackend` owns the decision of where voxel arrays live (host or
CUDA device) and provides the transfer primitives used to move data between that
storage and host-resident numpy buffers. Grids receive a backend instead of
deriving from a memory-management base, so the same grid code runs unchanged on
either residency.

Arrays are contiguous, so the byte pitch of a row is ``width * element_size`` and
the slice pitch is ``pitch * height``; the pitches are still reported so callers
can size peer buffers the same way for any backend.
"""

from __future__ import annotations

import logging

import numpy as np
import warp as wp

from .types import Devicelike

logger = logging.getLogger(__name__)


class MemoryBackendError(RuntimeError):
    """Raised when a Warp allocation or copy fails inside a :class:`MemoryBackend`.

    The originating Warp exception is available as ``__cause__``.
    """


def _host_shape(array: wp.array) -> tuple[int, ...]:
    """Shape of ``array`` as seen from numpy (vector dtypes add a trailing axis)."""
    return tuple(array.shape) + tuple(getattr(array.dtype, "_shape_", ()))


def _np_scalar_dtype(dtype) -> np.dtype:
    return np.dtype(wp.dtype_to_numpy(wp.types.type_scalar_type(dtype)))


def _host_view(buffer) -> np.ndarray:
    if isinstance(buffer, wp.array):
        if not buffer.device.is_cpu:
            raise ValueError(f"Expected a host-resident buffer, got an array on {buffer.device}")
        # zero-copy view for CPU arrays
        return buffer.numpy()
    return np.asarray(buffer)


class MemoryBackend:
    """Allocates voxel arrays on one Warp device and moves data to and from the host.

    Args:
        device: The Warp device to allocate on (e.g., "cuda:0", "cpu").
            If None, uses the default device.

    Attributes:
        device: The resolved :class:`warp.context.Device`.
    """

    def __init__(self, device: Devicelike = None):
        self.device = wp.get_device(device)

    @property
    def on_device(self) -> bool:
        """True when storage lives in CUDA device memory."""
        return self.device.is_cuda

    def allocate_pitched(
        self,
        width: int,
        height: int,
        depth: int,
        dtype,
        values_per_voxel: int = 1,
    ) -> tuple[wp.array, int, int]:
        """Allocate a zero-initialized flat array for a ``width x height x depth`` lattice.

        Args:
            width: Number of voxels along x.
            height: Number of voxels along y.
            depth: Number of voxels along z.
            dtype: Warp element type.
            values_per_voxel: Consecutive elements owned by each voxel.

        Returns:
            Tuple of (array, pitch, slice_pitch) where pitch and slice_pitch are in bytes.
        """
        count = width * height * depth * values_per_voxel
        try:
            array = wp.zeros(count, dtype=dtype, device=self.device)
        except Exception as e:
            raise MemoryBackendError(f"Failed to allocate {count} elements of {dtype} on {self.device}") from e

        pitch = width * values_per_voxel * wp.types.type_size_in_bytes(dtype)
        slice_pitch = pitch * height
        return array, pitch, slice_pitch

    def host_to_device(self, dest: wp.array, src: np.ndarray):
        """Copy a host buffer into device-resident ``dest``."""
        src = _host_view(src)
        if src.size == 0 and dest.size == 0:
            return
        staging = np.ascontiguousarray(src, dtype=_np_scalar_dtype(dest.dtype))
        self._check_size(dest, staging)
        try:
            wp.copy(dest, wp.array(staging.reshape(_host_shape(dest)), dtype=dest.dtype, device="cpu"))
            wp.synchronize_device(dest.device)
        except Exception as e:
            raise MemoryBackendError(f"Host to device copy into {dest.device} failed") from e

    def device_to_host(self, dest: np.ndarray, src: wp.array):
        """Copy device-resident ``src`` into a host buffer."""
        dest = _host_view(dest)
        if src.size == 0 and dest.size == 0:
            return
        self._check_size(src, dest)
        try:
            host = src.numpy()
        except Exception as e:
            raise MemoryBackendError(f"Device to host copy from {src.device} failed") from e
        dest[...] = host.reshape(dest.shape)

    def host_to_host(self, dest, src):
        """Copy between two host buffers (numpy arrays or CPU Warp arrays)."""
        dest_view = _host_view(dest)
        src_view = _host_view(src)
        if dest_view.size != src_view.size:
            raise ValueError(f"Buffer size mismatch: destination has {dest_view.size} values, source {src_view.size}")
        dest_view[...] = src_view.reshape(dest_view.shape)

    def read(self, array: wp.array, offset: int, count: int) -> np.ndarray:
        """Read ``count`` consecutive elements of ``array`` starting at ``offset`` into a new numpy array."""
        if array.device.is_cpu:
            return array.numpy()[offset : offset + count].copy()

        staging = wp.empty(count, dtype=array.dtype, device="cpu")
        try:
            wp.copy(staging, array, src_offset=offset, count=count)
            wp.synchronize_device(array.device)
        except Exception as e:
            raise MemoryBackendError(f"Read of {count} elements from {array.device} failed") from e
        return staging.numpy()

    def write(self, array: wp.array, offset: int, values):
        """Write ``values`` into consecutive elements of ``array`` starting at ``offset``."""
        item_shape = tuple(getattr(array.dtype, "_shape_", ()))
        values = np.asarray(values, dtype=_np_scalar_dtype(array.dtype)).reshape((-1, *item_shape))

        if array.device.is_cpu:
            array.numpy()[offset : offset + len(values)] = values
            return

        try:
            wp.copy(array, wp.array(values, dtype=array.dtype, device="cpu"), dest_offset=offset, count=len(values))
            wp.synchronize_device(array.device)
        except Exception as e:
            raise MemoryBackendError(f"Write of {len(values)} elements to {array.device} failed") from e

    @staticmethod
    def _check_size(array: wp.array, buffer: np.ndarray):
        expected = int(np.prod(_host_shape(array)))
        if buffer.size != expected:
            raise ValueError(f"Buffer size mismatch: array holds {expected} values, buffer {buffer.size}")
