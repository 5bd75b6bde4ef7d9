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

"""Finite-difference operators on the voxel lattice.

Forward-difference gradient and backward-difference divergence form the usual
adjoint pair of primal-dual total-variation solvers: with the dual field's axis
component zero on the upper boundary of that axis,
``<grad u, p> = -<u, div p>``.
"""

import warp as wp

from .voxel_grid import VoxelGridData, voxel_index


@wp.func
def grad_forward(grid: VoxelGridData, field: wp.array(dtype=wp.float32), x: int, y: int, z: int) -> wp.vec3:
    """Forward-difference gradient of a scalar voxel field.

    The component along an axis is zero on the last voxel of that axis.
    """
    f = field[voxel_index(grid, x, y, z)]
    gx = wp.float32(0.0)
    gy = wp.float32(0.0)
    gz = wp.float32(0.0)
    if x < grid.width - 1:
        gx = field[voxel_index(grid, x + 1, y, z)] - f
    if y < grid.height - 1:
        gy = field[voxel_index(grid, x, y + 1, z)] - f
    if z < grid.depth - 1:
        gz = field[voxel_index(grid, x, y, z + 1)] - f
    return wp.vec3(gx, gy, gz)


@wp.func
def div_backward(grid: VoxelGridData, x: int, y: int, z: int) -> float:
    """Backward-difference divergence of the dual field ``p``.

    The neighbour term along an axis is dropped on the first voxel of that axis.
    """
    p = grid.p[voxel_index(grid, x, y, z)]
    result = p[0] + p[1] + p[2]
    if x > 0:
        px = grid.p[voxel_index(grid, x - 1, y, z)]
        result -= px[0]
    if y > 0:
        py = grid.p[voxel_index(grid, x, y - 1, z)]
        result -= py[1]
    if z > 0:
        pz = grid.p[voxel_index(grid, x, y, z - 1)]
        result -= pz[2]
    return result


@wp.kernel
def gradient_kernel(
    grid: VoxelGridData,
    field: wp.array(dtype=wp.float32),
    out_grad: wp.array(dtype=wp.vec3),
):
    x, y, z = wp.tid()
    out_grad[voxel_index(grid, x, y, z)] = grad_forward(grid, field, x, y, z)


@wp.kernel
def divergence_kernel(grid: VoxelGridData, out_div: wp.array(dtype=wp.float32)):
    x, y, z = wp.tid()
    out_div[voxel_index(grid, x, y, z)] = div_backward(grid, x, y, z)


@wp.kernel
def gradient_at_kernel(
    grid: VoxelGridData,
    field: wp.array(dtype=wp.float32),
    x: int,
    y: int,
    z: int,
    out_grad: wp.array(dtype=wp.vec3),
):
    """Single-thread evaluation of :func:`grad_forward` at one voxel."""
    out_grad[0] = grad_forward(grid, field, x, y, z)


@wp.kernel
def divergence_at_kernel(grid: VoxelGridData, x: int, y: int, z: int, out_div: wp.array(dtype=wp.float32)):
    out_div[0] = div_backward(grid, x, y, z)
