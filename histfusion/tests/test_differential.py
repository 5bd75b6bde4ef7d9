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

"""Tests for the finite-difference operators on the voxel lattice.

This test suite validates:
1. Forward gradient components vanish on the upper boundary of each axis
2. Backward divergence drops the neighbour terms on the lower boundary
3. Batch operators match a numpy reference and the per-voxel wrappers
4. The gradient and divergence are negative adjoints of each other
"""

import unittest

import numpy as np
import warp as wp

from histfusion.fusion import FusionData


def reference_gradient(u: np.ndarray) -> np.ndarray:
    """Forward differences of a (depth, height, width) field, shape (depth, height, width, 3)."""
    grad = np.zeros((*u.shape, 3), dtype=u.dtype)
    grad[:, :, :-1, 0] = u[:, :, 1:] - u[:, :, :-1]
    grad[:, :-1, :, 1] = u[:, 1:, :] - u[:, :-1, :]
    grad[:-1, :, :, 2] = u[1:, :, :] - u[:-1, :, :]
    return grad


def reference_divergence(p: np.ndarray) -> np.ndarray:
    """Backward-difference divergence of a (depth, height, width, 3) field."""
    div = p[..., 0] + p[..., 1] + p[..., 2]
    div[:, :, 1:] -= p[:, :, :-1, 0]
    div[:, 1:, :] -= p[:, :-1, :, 1]
    div[1:, :, :] -= p[:-1, :, :, 2]
    return div


class TestDifferentialOperators(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        wp.init()

    def setUp(self):
        self.fusion = FusionData(5, 4, 3, num_bins=6, device="cpu")
        rng = np.random.default_rng(42)
        shape = (self.fusion.depth, self.fusion.height, self.fusion.width)
        self.u = rng.uniform(-1.0, 1.0, shape).astype(np.float32)
        self.v = rng.uniform(-1.0, 1.0, shape).astype(np.float32)
        self.p = rng.uniform(-1.0, 1.0, (*shape, 3)).astype(np.float32)

        buffer = self.fusion.host_buffer()
        buffer["u"] = self.u.reshape(-1)
        buffer["v"] = self.v.reshape(-1)
        buffer["p"] = self.p.reshape(-1, 3)
        self.fusion.copy_from(buffer)

    def test_gradient_at_upper_boundary(self):
        fusion = self.fusion
        w, h, d = fusion.width, fusion.height, fusion.depth

        g = fusion.grad_u_fwd(w - 1, 1, 1)
        self.assertEqual(g[0], 0.0)
        self.assertAlmostEqual(float(g[1]), float(self.u[1, 2, w - 1] - self.u[1, 1, w - 1]), places=6)

        g = fusion.grad_u_fwd(w - 1, h - 1, d - 1)
        np.testing.assert_array_equal(g, [0.0, 0.0, 0.0])

    def test_gradient_of_constant_field_is_zero(self):
        fusion = FusionData(3, 3, 3, num_bins=4, device="cpu")
        fusion.voxel_u.fill_(2.5)
        np.testing.assert_array_equal(fusion.compute_gradient().numpy(), 0.0)

    def test_divergence_at_origin(self):
        """At voxel (0, 0, 0) no backward neighbour exists, so div p = p.x + p.y + p.z."""
        self.assertAlmostEqual(self.fusion.div_p_bwd(0, 0, 0), float(self.p[0, 0, 0].sum()), places=6)

    def test_divergence_interior(self):
        x, y, z = 2, 1, 1
        p = self.p
        expected = p[z, y, x].sum() - p[z, y, x - 1, 0] - p[z, y - 1, x, 1] - p[z - 1, y, x, 2]
        self.assertAlmostEqual(self.fusion.div_p_bwd(x, y, z), float(expected), places=5)

    def test_batch_gradient_matches_reference(self):
        for field, values in (("u", self.u), ("v", self.v)):
            grad = self.fusion.compute_gradient(field).numpy()
            np.testing.assert_allclose(grad, reference_gradient(values).reshape(-1, 3), atol=1e-6, err_msg=field)

        with self.assertRaises(ValueError):
            self.fusion.compute_gradient("p")

    def test_batch_divergence_matches_reference(self):
        div = self.fusion.compute_divergence().numpy()
        np.testing.assert_allclose(div, reference_divergence(self.p).reshape(-1), atol=1e-5)

    def test_per_voxel_matches_batch(self):
        fusion = self.fusion
        grad_v = fusion.compute_gradient("v").numpy()
        div = fusion.compute_divergence().numpy()
        for x, y, z in ((0, 0, 0), (4, 3, 2), (1, 2, 0), (3, 0, 2)):
            idx = fusion.voxel_index(x, y, z)
            np.testing.assert_allclose(fusion.grad_v_fwd(x, y, z), grad_v[idx], atol=1e-6)
            self.assertAlmostEqual(fusion.div_p_bwd(x, y, z), float(div[idx]), places=6)

    def test_adjoint(self):
        """<grad u, p> = -<u, div p> once p's axis component vanishes on that axis' upper boundary."""
        fusion = self.fusion
        p = self.p.copy()
        p[:, :, -1, 0] = 0.0
        p[:, -1, :, 1] = 0.0
        p[-1, :, :, 2] = 0.0
        buffer = fusion.host_buffer()
        fusion.copy_to(buffer)
        buffer["p"] = p.reshape(-1, 3)
        fusion.copy_from(buffer)

        grad = fusion.compute_gradient().numpy().astype(np.float64)
        div = fusion.compute_divergence().numpy().astype(np.float64)

        lhs = float(np.sum(grad * p.reshape(-1, 3)))
        rhs = -float(np.dot(self.u.reshape(-1).astype(np.float64), div))
        self.assertAlmostEqual(lhs, rhs, places=4)

    def test_preallocated_output(self):
        out = wp.zeros(self.fusion.num_voxels, dtype=wp.float32, device="cpu")
        result = self.fusion.compute_divergence(out=out)
        self.assertIs(result, out)
        self.assertGreater(float(np.abs(out.numpy()).sum()), 0.0)


if __name__ == "__main__":
    unittest.main()
