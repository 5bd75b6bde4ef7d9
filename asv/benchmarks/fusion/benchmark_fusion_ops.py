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

"""ASV benchmarks for the per-voxel fusion operators.

Each benchmark maps one operator over a cubic grid with randomly filled
histograms:
- integrate: one signed-distance observation per voxel
- prox_hist: proximal step of the histogram data term (rank selection over 2K+1 candidates)
- gradient / divergence: forward and backward finite differences
- project_dual: projection of the dual field onto the unit ball

Uses CUDA graph capture for reliable timing measurements.
"""

import statistics

import numpy as np
import warp as wp
from asv_runner.benchmarks.mark import skip_benchmark_if

wp.config.quiet = True

from histfusion.fusion import FusionData


def build_fusion_data(grid_size: int, num_bins: int, seed: int = 42) -> FusionData:
    """Build a cubic FusionData with random u, p and histogram counts."""
    fusion = FusionData(grid_size, grid_size, grid_size, num_bins=num_bins)
    rng = np.random.default_rng(seed)

    buffer = fusion.host_buffer()
    buffer["u"] = rng.uniform(-1.0, 1.0, fusion.num_voxels)
    buffer["p"] = rng.uniform(-2.0, 2.0, (fusion.num_voxels, 3))
    buffer["h"] = rng.integers(0, 16, (fusion.num_voxels, num_bins))
    fusion.copy_from(buffer)
    return fusion


class FusionOperators:
    """Benchmark the batch operators of FusionData."""

    repeat = 5
    number = 1
    timeout = 300
    warmup_iterations = 5
    timed_iterations = 20
    params = [
        [32, 64, 128],  # grid_size (32K, 262K, 2M voxels)
        [10, 32],  # num_bins
        ["integrate", "prox_hist", "gradient", "divergence", "project_dual"],  # operator
    ]
    param_names = ["grid_size", "num_bins", "operator"]

    def setup(self, grid_size, num_bins, operator):
        self.fusion = build_fusion_data(grid_size, num_bins)
        self.device = self.fusion.device
        n = self.fusion.num_voxels

        rng = np.random.default_rng(7)
        self.depths = wp.array(np.full(n, 2.0, dtype=np.float32), dtype=wp.float32, device=self.device)
        self.voxel_depths = wp.array(
            rng.uniform(1.5, 2.5, n).astype(np.float32), dtype=wp.float32, device=self.device
        )
        self.out_scalar = wp.zeros(n, dtype=wp.float32, device=self.device)
        self.out_vector = wp.zeros(n, dtype=wp.vec3, device=self.device)

        self._launch_func = getattr(self, f"_launch_{operator}")

        # Warmup (required before graph capture)
        self._launch_func()
        wp.synchronize()

        self.graph = None
        if self.device.is_cuda:
            with wp.ScopedCapture() as capture:
                self._launch_func()
            self.graph = capture.graph

        for _ in range(self.warmup_iterations):
            if self.graph is not None:
                wp.capture_launch(self.graph)
            else:
                self._launch_func()
        wp.synchronize()

    def _launch_integrate(self):
        self.fusion.integrate(self.voxel_depths, self.depths, 0.1)

    def _launch_prox_hist(self):
        self.fusion.apply_prox_hist(0.01, 1.0, out=self.out_scalar)

    def _launch_gradient(self):
        self.fusion.compute_gradient("u", out=self.out_vector)

    def _launch_divergence(self):
        self.fusion.compute_divergence(out=self.out_scalar)

    def _launch_project_dual(self):
        self.fusion.project_dual()

    @skip_benchmark_if(wp.get_cuda_device_count() == 0)
    def time_operator(self, grid_size, num_bins, operator):
        """Time one launch of the operator over the whole grid."""
        samples = []
        for _ in range(self.timed_iterations):
            with wp.ScopedTimer(operator, synchronize=True, print=False) as timer:
                if self.graph is not None:
                    wp.capture_launch(self.graph)
                else:
                    self._launch_func()
            samples.append(timer.elapsed)
        return statistics.median(samples)

    @skip_benchmark_if(wp.get_cuda_device_count() == 0)
    def track_voxel_throughput(self, grid_size, num_bins, operator):
        """Track voxels processed per millisecond."""
        samples = []
        for _ in range(self.timed_iterations):
            with wp.ScopedTimer(operator, synchronize=True, print=False) as timer:
                if self.graph is not None:
                    wp.capture_launch(self.graph)
                else:
                    self._launch_func()
            samples.append(timer.elapsed)
        return self.fusion.num_voxels / max(statistics.median(samples), 1.0e-6)

    track_voxel_throughput.unit = "voxels/ms"


class FusionTransfers:
    """Benchmark bulk host transfers of the voxel store."""

    repeat = 5
    number = 1
    timeout = 300
    params = [
        [32, 64],  # grid_size
        [10, 32],  # num_bins
    ]
    param_names = ["grid_size", "num_bins"]

    def setup(self, grid_size, num_bins):
        self.fusion = build_fusion_data(grid_size, num_bins)
        self.buffer = self.fusion.host_buffer()
        self.fusion.copy_to(self.buffer)
        wp.synchronize()

    @skip_benchmark_if(wp.get_cuda_device_count() == 0)
    def time_copy_to(self, grid_size, num_bins):
        self.fusion.copy_to(self.buffer)

    @skip_benchmark_if(wp.get_cuda_device_count() == 0)
    def time_copy_from(self, grid_size, num_bins):
        self.fusion.copy_from(self.buffer)
        wp.synchronize()
