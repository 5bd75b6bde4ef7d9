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

"""Per-voxel core of histogram-based TV depth-map fusion on Warp."""

__version__ = "0.1.0"

from .fusion import BoundingBox, FusionData, MemoryBackend, MemoryBackendError, VoxelGrid, voxel_dtype

__all__ = [
    "BoundingBox",
    "FusionData",
    "MemoryBackend",
    "MemoryBackendError",
    "VoxelGrid",
    "__version__",
    "voxel_dtype",
]
