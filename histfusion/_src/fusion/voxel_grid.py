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

"""Dense voxel lattice holding the fusion variables.

Voxel fields are stored as separate flat arrays (primal ``u``, helper ``v``, dual
``p`` and the histogram counts), all addressed by the same linear index
``x + y * width + z * width * height``. Kernels receive the lattice as a
:class:`VoxelGridData` struct and use :func:`voxel_index` for every access; no
voxel refers to another except through that index arithmetic.

Example::

    grid = VoxelGrid(64, 64, 64, num_bins=10, device="cuda:0")

    @wp.kernel
    def fill_u(grid: VoxelGridData, value: float):
        x, y, z = wp.tid()
        grid.u[voxel_index(grid, x, y, z)] = value

    launch_voxels(fill_u, grid, inputs=[1.0])
"""

from __future__ import annotations

import logging

import numpy as np
import warp as wp

from ..core.memory import MemoryBackend
from ..core.types import BoundingBox, Devicelike
from .histogram import HistogramBin, voxel_dtype

logger = logging.getLogger(__name__)


@wp.struct
class VoxelGridData:
    """Kernel-side view of a :class:`VoxelGrid`."""

    u: wp.array(dtype=wp.float32)
    v: wp.array(dtype=wp.float32)
    p: wp.array(dtype=wp.vec3)
    # num_bins consecutive counts per voxel
    hist: wp.array(dtype=wp.int32)
    bin_centers: wp.array(dtype=wp.float32)

    width: wp.int32
    height: wp.int32
    depth: wp.int32
    num_bins: wp.int32

    # Bounding box corner and edge lengths in world coordinates
    origin: wp.vec3
    extent: wp.vec3


@wp.func
def voxel_index(grid: VoxelGridData, x: int, y: int, z: int) -> int:
    """Linear index of voxel (x, y, z). No bounds checking."""
    return x + y * grid.width + z * grid.width * grid.height


@wp.func
def voxel_world_coords(grid: VoxelGridData, x: int, y: int, z: int) -> wp.vec3:
    """World-space position of the center of voxel (x, y, z)."""
    rel = wp.vec3(
        (float(x) + 0.5) / float(grid.width),
        (float(y) + 0.5) / float(grid.height),
        (float(z) + 0.5) / float(grid.depth),
    )
    return grid.origin + wp.cw_mul(grid.extent, rel)


@wp.kernel
def _voxel_centers_kernel(grid: VoxelGridData, out_centers: wp.array(dtype=wp.vec3)):
    x, y, z = wp.tid()
    out_centers[voxel_index(grid, x, y, z)] = voxel_world_coords(grid, x, y, z)


def launch_voxels(kernel, grid: VoxelGrid, inputs=(), outputs=()):
    """Run ``kernel`` once per voxel of ``grid``.

    The kernel is launched over ``(width, height, depth)`` and receives
    ``grid.data`` as its first argument followed by ``inputs`` and ``outputs``.
    Threads run in no particular order, so a kernel launched this way must only
    write to the voxel at its own index (neighbours may be read but not written).
    Nothing is launched for an empty grid.

    Args:
        kernel: A Warp kernel whose first parameter is a :class:`VoxelGridData`.
        grid: The grid to map over.
        inputs: Additional kernel inputs.
        outputs: Kernel outputs.
    """
    if grid.num_voxels == 0:
        return

    wp.launch(
        kernel,
        dim=(grid.width, grid.height, grid.depth),
        inputs=[grid.data, *inputs],
        outputs=list(outputs),
        device=grid.device,
    )


class VoxelGrid:
    """A ``width x height x depth`` lattice of fusion voxels.

    Storage is allocated through a :class:`MemoryBackend` at construction and
    released together with the grid. Host accessors take voxel coordinates that
    default to (0, 0, 0); reads return copies and writes go through the matching
    ``set_*`` method, so the same code works for host and device residency.

    Args:
        width: Number of voxels along x.
        height: Number of voxels along y.
        depth: Number of voxels along z.
        num_bins: Histogram bins stored per voxel.
        volume: Bounding box of the lattice in world coordinates. Defaults to an
            empty box at the origin.
        device: Warp device for the storage. Ignored when ``backend`` is given.
        backend: Storage strategy; created from ``device`` if None.
        check_bounds: Validate coordinates in host accessors and raise
            :class:`IndexError` when they fall outside the lattice.

    Attributes:
        voxel_u: Primal variable, ``float32[num_voxels]``.
        voxel_v: Helper variable, ``float32[num_voxels]``.
        voxel_p: Dual variable, ``vec3[num_voxels]``.
        voxel_hist: Histogram counts, ``int32[num_voxels * num_bins]``.
        data: :class:`VoxelGridData` struct for kernels.
    """

    def __init__(
        self,
        width: int,
        height: int,
        depth: int,
        num_bins: int,
        volume: BoundingBox | None = None,
        device: Devicelike = None,
        backend: MemoryBackend | None = None,
        check_bounds: bool = False,
    ):
        for name, size in (("width", width), ("height", height), ("depth", depth)):
            if size < 0:
                raise ValueError(f"{name} must be non-negative, got {size}")
        if num_bins < 1:
            raise ValueError(f"num_bins must be positive, got {num_bins}")

        self.backend = backend if backend is not None else MemoryBackend(device)
        self.check_bounds = check_bounds

        self._width = int(width)
        self._height = int(height)
        self._depth = int(depth)
        self._num_bins = int(num_bins)

        w, h, d = self._width, self._height, self._depth
        fields, self._pitch, self._slice_pitch = self._allocate_fields()

        self.data = VoxelGridData()
        self._bind_fields(*fields)
        self.data.bin_centers = wp.zeros(self._num_bins, dtype=wp.float32, device=self.device)
        self.data.width = w
        self.data.height = h
        self.data.depth = d
        self.data.num_bins = self._num_bins

        self.volume = volume if volume is not None else BoundingBox()

        logger.debug(
            "Allocated %dx%dx%d voxel grid with %d bins on %s (%.3f MB)",
            w,
            h,
            d,
            self._num_bins,
            self.device,
            self.size_mb,
        )

    def __repr__(self):
        return (
            f"{type(self).__name__}({self._width}x{self._height}x{self._depth}, "
            f"num_bins={self._num_bins}, device={self.device})"
        )

    def _allocate_fields(self):
        """Allocate a zeroed set of u, v, p and histogram arrays.

        Returns:
            Tuple of ((u, v, p, hist), pitch, slice_pitch), pitches summed over the fields.
        """
        w, h, d = self._width, self._height, self._depth
        u, pitch_u, slice_u = self.backend.allocate_pitched(w, h, d, wp.float32)
        v, pitch_v, slice_v = self.backend.allocate_pitched(w, h, d, wp.float32)
        p, pitch_p, slice_p = self.backend.allocate_pitched(w, h, d, wp.vec3)
        hist, pitch_h, slice_h = self.backend.allocate_pitched(w, h, d, wp.int32, values_per_voxel=self._num_bins)
        return (u, v, p, hist), pitch_u + pitch_v + pitch_p + pitch_h, slice_u + slice_v + slice_p + slice_h

    def _bind_fields(self, u, v, p, hist):
        self.voxel_u = u
        self.voxel_v = v
        self.voxel_p = p
        self.voxel_hist = hist
        self.data.u = u
        self.data.v = v
        self.data.p = p
        self.data.hist = hist

    # Dimensions and footprint

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def num_bins(self) -> int:
        return self._num_bins

    @property
    def num_voxels(self) -> int:
        return self._width * self._height * self._depth

    @property
    def pitch(self) -> int:
        """Bytes per row of voxels."""
        return self._pitch

    @property
    def slice_pitch(self) -> int:
        """Bytes per xy-slice of voxels."""
        return self._slice_pitch

    @property
    def size_bytes(self) -> int:
        return self._slice_pitch * self._depth

    @property
    def size_kb(self) -> float:
        return self.size_bytes / 1024.0

    @property
    def size_mb(self) -> float:
        return self.size_kb / 1024.0

    @property
    def size_gb(self) -> float:
        return self.size_mb / 1024.0

    @property
    def device(self):
        return self.backend.device

    @property
    def on_device(self) -> bool:
        return self.backend.on_device

    # Bounding volume

    @property
    def volume(self) -> BoundingBox:
        return self._volume

    @volume.setter
    def volume(self, volume: BoundingBox):
        self._volume = volume
        self.data.origin = wp.vec3(volume.lower)
        self.data.extent = wp.vec3(volume.size())

    def set_volume(self, lower, upper):
        """Set the bounding box from two opposite corners."""
        self.volume = BoundingBox(lower, upper)

    def world_coords(self, x: int, y: int, z: int) -> np.ndarray:
        """World-space position of the center of voxel (x, y, z)."""
        rel = np.array(
            [(x + 0.5) / self._width, (y + 0.5) / self._height, (z + 0.5) / self._depth],
            dtype=np.float32,
        )
        return self._volume.lower + self._volume.size() * rel

    def voxel_centers(self) -> wp.array:
        """World-space voxel centers for the whole grid, ``vec3[num_voxels]`` in index order."""
        centers = wp.zeros(self.num_voxels, dtype=wp.vec3, device=self.device)
        launch_voxels(_voxel_centers_kernel, self, outputs=[centers])
        return centers

    # Element access

    def voxel_index(self, x: int = 0, y: int = 0, z: int = 0) -> int:
        if self.check_bounds and not (
            0 <= x < self._width and 0 <= y < self._height and 0 <= z < self._depth
        ):
            raise IndexError(
                f"Voxel ({x}, {y}, {z}) is outside the {self._width}x{self._height}x{self._depth} grid"
            )
        return x + y * self._width + z * self._width * self._height

    def u(self, x: int = 0, y: int = 0, z: int = 0) -> float:
        return float(self.backend.read(self.voxel_u, self.voxel_index(x, y, z), 1)[0])

    def set_u(self, value: float, x: int = 0, y: int = 0, z: int = 0):
        self.backend.write(self.voxel_u, self.voxel_index(x, y, z), [value])

    def v(self, x: int = 0, y: int = 0, z: int = 0) -> float:
        return float(self.backend.read(self.voxel_v, self.voxel_index(x, y, z), 1)[0])

    def set_v(self, value: float, x: int = 0, y: int = 0, z: int = 0):
        self.backend.write(self.voxel_v, self.voxel_index(x, y, z), [value])

    def p(self, x: int = 0, y: int = 0, z: int = 0) -> np.ndarray:
        """Dual vector of voxel (x, y, z), shape (3,)."""
        return self.backend.read(self.voxel_p, self.voxel_index(x, y, z), 1)[0]

    def set_p(self, value, x: int = 0, y: int = 0, z: int = 0):
        self.backend.write(self.voxel_p, self.voxel_index(x, y, z), [value])

    def h(self, x: int = 0, y: int = 0, z: int = 0) -> HistogramBin:
        """Snapshot of the histogram of voxel (x, y, z)."""
        base = self.voxel_index(x, y, z) * self._num_bins
        return HistogramBin(self.backend.read(self.voxel_hist, base, self._num_bins))

    def set_h(self, hist, x: int = 0, y: int = 0, z: int = 0):
        counts = hist.counts if isinstance(hist, HistogramBin) else np.asarray(hist)
        if counts.size != self._num_bins:
            raise ValueError(f"Expected {self._num_bins} histogram counts, got {counts.size}")
        self.backend.write(self.voxel_hist, self.voxel_index(x, y, z) * self._num_bins, counts)

    def voxel(self, x: int = 0, y: int = 0, z: int = 0) -> np.void:
        """Copy of voxel (x, y, z) as a :func:`voxel_dtype` record."""
        record = np.zeros((), dtype=voxel_dtype(self._num_bins))
        record["u"] = self.u(x, y, z)
        record["v"] = self.v(x, y, z)
        record["p"] = self.p(x, y, z)
        record["h"] = self.h(x, y, z).counts
        return record[()]

    def set_voxel(self, record, x: int = 0, y: int = 0, z: int = 0):
        self.set_u(record["u"], x, y, z)
        self.set_v(record["v"], x, y, z)
        self.set_p(record["p"], x, y, z)
        self.set_h(record["h"], x, y, z)

    # Bulk state

    def clear(self):
        """Zero every voxel field."""
        if self.num_voxels == 0:
            return
        self.voxel_u.zero_()
        self.voxel_v.zero_()
        self.voxel_p.zero_()
        self.voxel_hist.zero_()

    def clear_histograms(self):
        """Reset all histogram counts to zero."""
        if self.num_voxels == 0:
            return
        self.voxel_hist.zero_()
