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

"""Tests for VoxelGrid storage, addressing and bulk transfers.

This test suite validates:
1. Linear voxel addressing and optional bounds checking of host accessors
2. Pitch and footprint queries
3. World coordinates of voxel centers
4. Bit-exact copy_from / copy_to round trips on host and device storage
"""

import unittest

import numpy as np
import warp as wp

from histfusion.fusion import BoundingBox, FusionData, HistogramBin, MemoryBackend, VoxelGrid, voxel_dtype


class TestVoxelGridAccess(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        wp.init()

    def test_default_state(self):
        grid = FusionData(4, 4, 4, num_bins=10, device="cpu")
        self.assertEqual(grid.u(), 0.0)
        self.assertEqual(grid.v(1, 2, 3), 0.0)
        np.testing.assert_array_equal(grid.p(3, 3, 3), [0.0, 0.0, 0.0])
        self.assertEqual(grid.h(2, 1, 0), HistogramBin.zeros(10))
        self.assertFalse(grid.on_device)

    def test_voxel_index(self):
        grid = VoxelGrid(5, 4, 3, num_bins=4, device="cpu")
        self.assertEqual(grid.voxel_index(), 0)
        self.assertEqual(grid.voxel_index(1, 0, 0), 1)
        self.assertEqual(grid.voxel_index(0, 1, 0), 5)
        self.assertEqual(grid.voxel_index(0, 0, 1), 20)
        self.assertEqual(grid.voxel_index(4, 3, 2), grid.num_voxels - 1)

    def test_setters_address_single_voxel(self):
        grid = FusionData(3, 2, 2, num_bins=5, device="cpu")
        grid.set_u(1.5, 2, 1, 0)
        grid.set_v(-0.25, 0, 1, 1)
        grid.set_p([0.1, 0.2, 0.3], 1, 0, 1)
        grid.set_h(HistogramBin([1, 0, 2, 0, 3]), 2, 1, 1)

        self.assertEqual(grid.u(2, 1, 0), 1.5)
        self.assertEqual(grid.voxel_u.numpy()[grid.voxel_index(2, 1, 0)], 1.5)
        self.assertEqual(int(np.count_nonzero(grid.voxel_u.numpy())), 1)
        self.assertEqual(grid.v(0, 1, 1), -0.25)
        np.testing.assert_allclose(grid.p(1, 0, 1), [0.1, 0.2, 0.3], atol=1e-7)
        np.testing.assert_array_equal(grid.h(2, 1, 1).counts, [1, 0, 2, 0, 3])
        self.assertEqual(grid.h(1, 1, 1).total, 0)

        with self.assertRaises(ValueError):
            grid.set_h([1, 2, 3])

    def test_voxel_record(self):
        grid = FusionData(2, 2, 1, num_bins=4, device="cpu")
        record = np.zeros((), dtype=voxel_dtype(4))
        record["u"] = 0.75
        record["v"] = -0.5
        record["p"] = [1.0, 0.0, -1.0]
        record["h"] = [4, 3, 2, 1]
        grid.set_voxel(record, 1, 1, 0)

        copy = grid.voxel(1, 1, 0)
        self.assertEqual(copy.tobytes(), record.tobytes())
        self.assertEqual(grid.voxel().tobytes(), np.zeros((), dtype=voxel_dtype(4)).tobytes())

    def test_snapshots_do_not_alias_storage(self):
        grid = FusionData(2, 1, 1, num_bins=4, device="cpu")
        hist = grid.h(1, 0, 0)
        hist.increment(2)
        self.assertEqual(grid.h(1, 0, 0).total, 0)
        grid.set_h(hist, 1, 0, 0)
        self.assertEqual(grid.h(1, 0, 0)[2], 1)

    def test_check_bounds(self):
        grid = FusionData(2, 3, 4, num_bins=4, device="cpu", check_bounds=True)
        for coords in ((2, 0, 0), (0, 3, 0), (0, 0, 4), (-1, 0, 0)):
            with self.assertRaises(IndexError, msg=str(coords)):
                grid.u(*coords)
        with self.assertRaises(IndexError):
            grid.update_hist(5, 0, 0, 1.0, 0.5, 0.1)
        grid.set_u(1.0, 1, 2, 3)
        self.assertEqual(grid.u(1, 2, 3), 1.0)

    def test_clear(self):
        grid = FusionData(2, 2, 2, num_bins=4, device="cpu")
        grid.set_u(1.0)
        grid.set_p([1.0, 1.0, 1.0], 1, 1, 1)
        grid.update_hist(0, 1, 0, 1.0, 0.0, 0.1)
        grid.clear()
        buffer = grid.host_buffer()
        grid.copy_to(buffer)
        self.assertEqual(buffer.tobytes(), grid.host_buffer().tobytes())

    def test_invalid_sizes(self):
        with self.assertRaises(ValueError):
            VoxelGrid(-1, 2, 2, num_bins=4, device="cpu")
        with self.assertRaises(ValueError):
            VoxelGrid(2, 2, 2, num_bins=0, device="cpu")


class TestVoxelGridGeometry(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        wp.init()

    def test_pitch_and_size(self):
        num_bins = 10
        grid = FusionData(8, 6, 4, num_bins=num_bins, device="cpu")
        itemsize = voxel_dtype(num_bins).itemsize
        self.assertEqual(itemsize, 20 + 4 * num_bins)
        self.assertEqual(grid.pitch, 8 * itemsize)
        self.assertEqual(grid.slice_pitch, grid.pitch * 6)
        self.assertEqual(grid.size_bytes, grid.num_voxels * itemsize)
        self.assertAlmostEqual(grid.size_kb, grid.size_bytes / 1024.0)
        self.assertAlmostEqual(grid.size_mb, grid.size_kb / 1024.0)
        self.assertAlmostEqual(grid.size_gb, grid.size_mb / 1024.0)

    def test_world_coords(self):
        grid = VoxelGrid(2, 2, 2, num_bins=4, volume=BoundingBox((0, 0, 0), (2, 2, 2)), device="cpu")
        np.testing.assert_allclose(grid.world_coords(0, 0, 0), [0.5, 0.5, 0.5])
        np.testing.assert_allclose(grid.world_coords(1, 0, 1), [1.5, 0.5, 1.5])

    def test_volume_setter(self):
        grid = VoxelGrid(4, 2, 1, num_bins=4, device="cpu")
        self.assertTrue(grid.volume.is_empty())
        grid.set_volume((-1.0, 0.0, 2.0), (1.0, 1.0, 3.0))
        np.testing.assert_allclose(grid.world_coords(0, 0, 0), [-0.75, 0.25, 2.5])
        np.testing.assert_allclose(grid.volume.center(), [0.0, 0.5, 2.5])

    def test_voxel_centers_match_world_coords(self):
        grid = VoxelGrid(3, 4, 2, num_bins=4, volume=BoundingBox((1, -2, 0), (4, 2, 1)), device="cpu")
        centers = grid.voxel_centers().numpy()
        for z in range(grid.depth):
            for y in range(grid.height):
                for x in range(grid.width):
                    np.testing.assert_allclose(
                        centers[grid.voxel_index(x, y, z)], grid.world_coords(x, y, z), atol=1e-6
                    )

    def test_bounding_box_shape(self):
        with self.assertRaises(ValueError):
            BoundingBox((0, 0), (1, 1, 1))


class TestVoxelGridTransfers(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        wp.init()

    @staticmethod
    def random_buffer(grid: FusionData, seed: int = 0) -> np.ndarray:
        rng = np.random.default_rng(seed)
        buffer = grid.host_buffer()
        buffer["u"] = rng.standard_normal(grid.num_voxels)
        buffer["v"] = rng.standard_normal(grid.num_voxels)
        buffer["p"] = rng.standard_normal((grid.num_voxels, 3))
        buffer["h"] = rng.integers(0, 1000, (grid.num_voxels, grid.num_bins))
        return buffer

    def check_round_trip(self, device):
        grid = FusionData(5, 3, 2, num_bins=12, device=device)
        src = self.random_buffer(grid)
        grid.copy_from(src)

        dest = grid.host_buffer()
        grid.copy_to(dest)
        self.assertEqual(dest.tobytes(), src.tobytes())

        index = grid.voxel_index(4, 2, 1)
        self.assertEqual(grid.voxel(4, 2, 1).tobytes(), src[index].tobytes())

        # the exported buffer restores a newly constructed store of the same size
        fresh = FusionData(5, 3, 2, num_bins=12, device=device)
        fresh.copy_from(dest)
        restored = fresh.host_buffer()
        fresh.copy_to(restored)
        self.assertEqual(restored.tobytes(), src.tobytes())
        self.assertEqual(fresh.voxel(4, 2, 1).tobytes(), src[index].tobytes())

    def test_round_trip_cpu(self):
        self.check_round_trip("cpu")

    @unittest.skipUnless(wp.is_cuda_available(), "Requires CUDA")
    def test_round_trip_cuda(self):
        self.check_round_trip("cuda:0")

    def test_round_trip_with_explicit_backend(self):
        backend = MemoryBackend("cpu")
        grid = FusionData(2, 2, 2, num_bins=4, backend=backend)
        self.assertIs(grid.backend, backend)
        src = self.random_buffer(grid, seed=5)
        grid.copy_from(src)
        dest = grid.host_buffer()
        grid.copy_to(dest)
        self.assertEqual(dest.tobytes(), src.tobytes())

    def test_buffer_mismatch(self):
        grid = FusionData(2, 2, 2, num_bins=4, device="cpu")
        with self.assertRaises(ValueError):
            grid.copy_from(np.zeros(grid.num_voxels, dtype=voxel_dtype(5)))
        with self.assertRaises(ValueError):
            grid.copy_to(np.zeros(grid.num_voxels + 1, dtype=voxel_dtype(4)))
        with self.assertRaises(ValueError):
            grid.copy_to(np.zeros(grid.num_voxels, dtype=np.float32))


if __name__ == "__main__":
    unittest.main()
