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

"""Depth-map fusion data and its per-voxel operators.

:class:`FusionData` extends :class:`VoxelGrid` with the histogram bin
parameters and everything an iterative primal-dual solver needs at voxel
granularity: histogram integration of signed-distance observations, the
proximal step of the histogram data term, the dual projection and the
finite-difference operators. The solver loop itself lives outside this module.

Every operator is available in two forms:

- a ``@wp.func`` (:func:`update_hist`, :func:`prox_hist`, :func:`project_unit_ball`,
  plus :func:`grad_forward` / :func:`div_backward`) for use inside custom kernels,
- a host method on :class:`FusionData`, either for one voxel (``update_hist``,
  ``prox_hist``, ``grad_u_fwd``, ...) or for the whole grid as a parallel map
  (``integrate``, ``apply_prox_hist``, ``project_dual``, ``compute_gradient``,
  ``compute_divergence``).

Example::

    fusion = FusionData(128, 128, 128, num_bins=10, volume=BoundingBox(lower, upper), device="cuda:0")
    centers = fusion.voxel_centers()
    # ... project centers into a depth map to get voxel_depths and observed depths ...
    fusion.integrate(voxel_depths, depths, threshold=0.05)
    u_next = fusion.apply_prox_hist(tau=0.1, lam=0.5, u=u_candidate)
"""

from __future__ import annotations

import logging

import numpy as np
import warp as wp

from ..core.memory import MemoryBackend
from ..core.types import BoundingBox, Devicelike
from .differential import divergence_at_kernel, divergence_kernel, gradient_at_kernel, gradient_kernel
from .histogram import HistogramBinning, SortedHistogram, histogram_prox, histogram_update, voxel_dtype
from .voxel_grid import VoxelGrid, VoxelGridData, launch_voxels, voxel_index

logger = logging.getLogger(__name__)


@wp.func
def update_hist(grid: VoxelGridData, x: int, y: int, z: int, voxel_depth: float, depth: float, threshold: float):
    """Count the observation ``voxel_depth - depth`` in the histogram of voxel (x, y, z)."""
    histogram_update(
        grid.hist,
        voxel_index(grid, x, y, z) * grid.num_bins,
        grid.num_bins,
        voxel_depth - depth,
        threshold,
    )


@wp.func
def prox_hist(grid: VoxelGridData, u: float, x: int, y: int, z: int, tau: float, lam: float) -> float:
    """Proximal step of the histogram data term of voxel (x, y, z) evaluated at ``u``."""
    return histogram_prox(
        grid.hist,
        voxel_index(grid, x, y, z) * grid.num_bins,
        grid.num_bins,
        grid.bin_centers,
        u,
        tau,
        lam,
    )


@wp.func
def project_unit_ball(p: wp.vec3) -> wp.vec3:
    """Scale ``p`` back onto the Euclidean unit ball if it lies outside."""
    return p / wp.max(1.0, wp.length(p))


@wp.kernel
def _integrate_kernel(
    grid: VoxelGridData,
    voxel_depths: wp.array(dtype=wp.float32),
    depths: wp.array(dtype=wp.float32),
    threshold: float,
):
    x, y, z = wp.tid()
    idx = voxel_index(grid, x, y, z)
    depth = depths[idx]
    # NaN marks voxels without an observation
    if wp.isnan(depth):
        return
    update_hist(grid, x, y, z, voxel_depths[idx], depth, threshold)


@wp.kernel
def _update_hist_at_kernel(
    grid: VoxelGridData,
    x: int,
    y: int,
    z: int,
    voxel_depth: float,
    depth: float,
    threshold: float,
):
    update_hist(grid, x, y, z, voxel_depth, depth, threshold)


@wp.kernel
def _prox_hist_kernel(
    grid: VoxelGridData,
    u_in: wp.array(dtype=wp.float32),
    tau: float,
    lam: float,
    u_out: wp.array(dtype=wp.float32),
):
    x, y, z = wp.tid()
    idx = voxel_index(grid, x, y, z)
    u_out[idx] = prox_hist(grid, u_in[idx], x, y, z, tau, lam)


@wp.kernel
def _project_dual_kernel(grid: VoxelGridData):
    x, y, z = wp.tid()
    idx = voxel_index(grid, x, y, z)
    grid.p[idx] = project_unit_ball(grid.p[idx])


class FusionData(VoxelGrid):
    """Voxel data of a histogram-based TV depth-map fusion.

    Args:
        width: Number of voxels along x.
        height: Number of voxels along y.
        depth: Number of voxels along z.
        num_bins: Number of signed-distance histogram bins (2 to 255).
        volume: Bounding box of the grid in world coordinates.
        device: Warp device for the voxel storage.
        backend: Storage strategy; created from ``device`` if None.
        check_bounds: Validate voxel coordinates in host accessors.

    Attributes:
        binning: The :class:`HistogramBinning` of this store, fixed at construction.
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
        self.binning = HistogramBinning(num_bins, stacklevel=3)
        super().__init__(
            width,
            height,
            depth,
            num_bins,
            volume=volume,
            device=device,
            backend=backend,
            check_bounds=check_bounds,
        )
        self.backend.write(self.data.bin_centers, 0, self.binning.centers)

    # Bin parameters

    def bin_center(self, index: int) -> float:
        return self.binning.center(index)

    @property
    def bin_step(self) -> float:
        return self.binning.step

    # Differential operators

    def grad_u_fwd(self, x: int, y: int, z: int) -> np.ndarray:
        """Forward-difference gradient of ``u`` at voxel (x, y, z)."""
        return self._gradient_at(self.voxel_u, x, y, z)

    def grad_v_fwd(self, x: int, y: int, z: int) -> np.ndarray:
        """Forward-difference gradient of ``v`` at voxel (x, y, z)."""
        return self._gradient_at(self.voxel_v, x, y, z)

    def div_p_bwd(self, x: int, y: int, z: int) -> float:
        """Backward-difference divergence of ``p`` at voxel (x, y, z)."""
        self.voxel_index(x, y, z)
        out = wp.zeros(1, dtype=wp.float32, device=self.device)
        wp.launch(divergence_at_kernel, dim=1, inputs=[self.data, x, y, z], outputs=[out], device=self.device)
        return float(out.numpy()[0])

    def compute_gradient(self, field: str = "u", out: wp.array | None = None) -> wp.array:
        """Forward-difference gradient of ``u`` or ``v`` over the whole grid.

        Args:
            field: ``"u"`` or ``"v"``.
            out: Optional ``vec3[num_voxels]`` output array.

        Returns:
            The gradient array.
        """
        values = self._scalar_field(field)
        if out is None:
            out = wp.zeros(self.num_voxels, dtype=wp.vec3, device=self.device)
        launch_voxels(gradient_kernel, self, inputs=[values], outputs=[out])
        return out

    def compute_divergence(self, out: wp.array | None = None) -> wp.array:
        """Backward-difference divergence of ``p`` over the whole grid."""
        if out is None:
            out = wp.zeros(self.num_voxels, dtype=wp.float32, device=self.device)
        launch_voxels(divergence_kernel, self, outputs=[out])
        return out

    # Histogram data term

    def update_hist(self, x: int, y: int, z: int, voxel_depth: float, depth: float, threshold: float):
        """Add one signed-distance observation to the histogram of voxel (x, y, z).

        With ``sd = voxel_depth - depth``: ``sd >= threshold`` counts as empty,
        ``sd <= -threshold`` as occluded, anything in between goes to bin
        ``round((sd + threshold) / (2 * threshold) * (num_bins - 3))``. The
        threshold is 0 for two-bin histograms.
        """
        self.voxel_index(x, y, z)
        wp.launch(
            _update_hist_at_kernel,
            dim=1,
            inputs=[self.data, x, y, z, float(voxel_depth), float(depth), float(threshold)],
            device=self.device,
        )

    def integrate(self, voxel_depths, depths, threshold: float):
        """Add one observation per voxel to the histograms.

        Args:
            voxel_depths: Per-voxel depth in the camera frame, ``num_voxels`` values in index order.
            depths: Observed depth at each voxel's projection. NaN entries are skipped.
            threshold: Signed-distance band around the surface.
        """
        voxel_depths = self._as_voxel_array(voxel_depths, "voxel_depths")
        depths = self._as_voxel_array(depths, "depths")
        launch_voxels(_integrate_kernel, self, inputs=[voxel_depths, depths, float(threshold)])

    def wi(self, i: int, x: int, y: int, z: int) -> int:
        """Signed count imbalance ``W_i`` of voxel (x, y, z) after the first ``i`` bins."""
        return self.h(x, y, z).imbalance(i)

    def pi(self, u: float, i: int, x: int, y: int, z: int, tau: float, lam: float) -> float:
        """Proximal candidate ``p_i = u + tau * lam * W_i`` of voxel (x, y, z)."""
        return u + tau * lam * self.wi(i, x, y, z)

    def prox_hist(self, u: float, x: int, y: int, z: int, tau: float, lam: float) -> float:
        """Proximal step of the histogram data term of voxel (x, y, z) evaluated at ``u``.

        Inserts ``p_0 = u`` and ``p_1 ... p_num_bins`` into a :class:`SortedHistogram`
        seeded with the bin centers and returns its median.
        """
        hist = self.h(x, y, z)
        prox = SortedHistogram(self.binning.centers)
        prox.insert(u)
        for i in range(1, self.num_bins + 1):
            prox.insert(u + tau * lam * hist.imbalance(i))
        return prox.median()

    def apply_prox_hist(self, tau: float, lam: float, u: wp.array | None = None, out: wp.array | None = None):
        """Evaluate :meth:`prox_hist` for every voxel.

        Args:
            tau: Primal step size.
            lam: Data term weight.
            u: Per-voxel values to evaluate at; defaults to the stored ``u``.
            out: Output array, may alias ``u``. A new array is allocated if None.

        Returns:
            ``float32[num_voxels]`` array with the proximal values.
        """
        u = self.voxel_u if u is None else self._as_voxel_array(u, "u")
        if out is None:
            out = wp.zeros(self.num_voxels, dtype=wp.float32, device=self.device)
        launch_voxels(_prox_hist_kernel, self, inputs=[u, float(tau), float(lam)], outputs=[out])
        return out

    # Dual variable

    @staticmethod
    def project_unit_ball(p) -> np.ndarray:
        """Return ``p / max(1, |p|)``, the projection onto the Euclidean unit ball."""
        p = np.asarray(p, dtype=np.float32)
        return p / max(np.float32(1.0), np.linalg.norm(p))

    def project_dual(self):
        """Project the stored dual variable of every voxel onto the unit ball in place."""
        launch_voxels(_project_dual_kernel, self)

    # Bulk transfers

    def host_buffer(self) -> np.ndarray:
        """Allocate a zeroed host buffer matching this store, usable with :meth:`copy_to` / :meth:`copy_from`."""
        return np.zeros(self.num_voxels, dtype=voxel_dtype(self.num_bins))

    def copy_from(self, buffer: np.ndarray):
        """Overwrite every voxel with the records of a host buffer.

        The records are copied into freshly allocated field arrays, which replace
        ``voxel_u``, ``voxel_v``, ``voxel_p`` and ``voxel_hist`` only once every
        field has been transferred. If a transfer fails the store is unchanged.

        Args:
            buffer: Host array of :func:`voxel_dtype` records with ``num_voxels`` elements,
                in voxel index order.

        Raises:
            ValueError: If ``buffer`` does not match the store.
            MemoryBackendError: If a transfer fails.
        """
        self._check_buffer(buffer)
        copy = self.backend.host_to_device if self.on_device else self.backend.host_to_host
        staged, _, _ = self._allocate_fields()
        for (name, _), array in zip(self._fields(), staged):
            copy(array, buffer[name])
        self._bind_fields(*staged)
        logger.debug("Copied %d voxels from host into %s", self.num_voxels, self.device)

    def copy_to(self, buffer: np.ndarray):
        """Write every voxel into a host buffer of :func:`voxel_dtype` records.

        ``buffer`` is only written after all fields were read, so it is left
        untouched when a transfer fails.
        """
        self._check_buffer(buffer)
        copy = self.backend.device_to_host if self.on_device else self.backend.host_to_host
        staging = self.host_buffer()
        for name, array in self._fields():
            copy(staging[name], array)
        buffer[...] = staging
        logger.debug("Copied %d voxels from %s to host", self.num_voxels, self.device)

    # Helpers

    def _fields(self):
        return (("u", self.voxel_u), ("v", self.voxel_v), ("p", self.voxel_p), ("h", self.voxel_hist))

    def _scalar_field(self, field: str) -> wp.array:
        if field == "u":
            return self.voxel_u
        if field == "v":
            return self.voxel_v
        raise ValueError(f"field must be 'u' or 'v', got {field!r}")

    def _gradient_at(self, values: wp.array, x: int, y: int, z: int) -> np.ndarray:
        self.voxel_index(x, y, z)
        out = wp.zeros(1, dtype=wp.vec3, device=self.device)
        wp.launch(gradient_at_kernel, dim=1, inputs=[self.data, values, x, y, z], outputs=[out], device=self.device)
        return out.numpy()[0]

    def _as_voxel_array(self, values, name: str) -> wp.array:
        if isinstance(values, wp.array):
            if values.shape != (self.num_voxels,) or values.dtype != wp.float32:
                raise ValueError(f"{name} must be a float32 array of length {self.num_voxels}")
            if values.device != self.device:
                raise ValueError(f"{name} lives on {values.device}, expected {self.device}")
            return values
        values = np.asarray(values, dtype=np.float32).reshape(-1)
        if values.size != self.num_voxels:
            raise ValueError(f"{name} must have {self.num_voxels} values, got {values.size}")
        return wp.array(values, dtype=wp.float32, device=self.device)

    def _check_buffer(self, buffer: np.ndarray):
        expected = voxel_dtype(self.num_bins)
        if not isinstance(buffer, np.ndarray) or buffer.dtype != expected:
            raise ValueError(f"Expected a numpy array of voxel_dtype({self.num_bins}) records")
        if buffer.size != self.num_voxels:
            raise ValueError(f"Buffer holds {buffer.size} voxels, grid has {self.num_voxels}")
