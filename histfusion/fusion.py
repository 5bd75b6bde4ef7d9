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

from ._src.core import BoundingBox, MemoryBackend, MemoryBackendError
from ._src.fusion import (
    MAX_HIST_BINS,
    FusionData,
    HistogramBin,
    HistogramBinning,
    SortedHistogram,
    VoxelGrid,
    VoxelGridData,
    div_backward,
    grad_forward,
    histogram_prox,
    histogram_update,
    launch_voxels,
    project_unit_ball,
    prox_hist,
    update_hist,
    voxel_dtype,
    voxel_index,
    voxel_world_coords,
)

__all__ = [
    "MAX_HIST_BINS",
    "BoundingBox",
    "FusionData",
    "HistogramBin",
    "HistogramBinning",
    "MemoryBackend",
    "MemoryBackendError",
    "SortedHistogram",
    "VoxelGrid",
    "VoxelGridData",
    "div_backward",
    "grad_forward",
    "histogram_prox",
    "histogram_update",
    "launch_voxels",
    "project_unit_ball",
    "prox_hist",
    "update_hist",
    "voxel_dtype",
    "voxel_index",
    "voxel_world_coords",
]
