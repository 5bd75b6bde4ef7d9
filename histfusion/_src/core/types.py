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

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from warp.context import Devicelike

__all__ = ["BoundingBox", "Devicelike"]


def _as_vec3(value) -> np.ndarray:
    vec = np.asarray(value, dtype=np.float32).reshape(-1)
    if vec.shape != (3,):
        raise ValueError(f"Expected a 3D point, got shape {vec.shape}")
    return vec


@dataclass
class BoundingBox:
    """Axis-aligned box in world coordinates spanned by two opposite corners.

    ``lower`` is the corner voxel (0, 0, 0) is anchored to; ``upper`` is the
    opposite corner. No ordering between the two is enforced, so a box with
    ``upper < lower`` on some axis simply mirrors the voxel layout on that axis.

    Attributes:
        lower: Corner of the box, shape (3,).
        upper: Corner opposite to ``lower``, shape (3,).
    """

    lower: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=np.float32))
    upper: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=np.float32))

    def __post_init__(self):
        self.lower = _as_vec3(self.lower)
        self.upper = _as_vec3(self.upper)

    def size(self) -> np.ndarray:
        """Edge lengths of the box (``upper - lower``)."""
        return self.upper - self.lower

    def center(self) -> np.ndarray:
        return (self.lower + self.upper) * np.float32(0.5)

    def is_empty(self) -> bool:
        return bool(np.any(self.size() == 0.0))
