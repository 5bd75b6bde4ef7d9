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

"""Signed-distance histograms and the proximal operator of the histogram data term.

Each voxel keeps ``num_bins`` observation counts. Bin 0 collects occluded
observations (signed distance saturated at -1), the last bin collects empty-space
observations (saturated at +1), and the bins in between partition the band
(-1, 1) around the surface.

The data term ``sum_i h_i |u - c_i|`` has a closed-form proximal step: with
``W_i = -sum_{j<=i} h_j + sum_{j>i} h_j`` and ``p_i = u + tau * lambda * W_i``, the
minimizer is the median of the bin centers ``c_i`` together with ``p_0 = u`` and
``p_1 ... p_K``. That is ``2K + 1`` values, so the median is always a single
element of the set.
"""

from __future__ import annotations

import bisect
import warnings

import numpy as np
import warp as wp

# Bin counts were historically stored in a byte
MAX_HIST_BINS = 255


def voxel_dtype(num_bins: int) -> np.dtype:
    """Numpy record type of a single voxel stored by value.

    Fields are ``u`` (primal), ``v`` (helper), ``p`` (dual, 3 components) and
    ``h`` (``num_bins`` histogram counts).
    """
    return np.dtype(
        [
            ("u", np.float32),
            ("v", np.float32),
            ("p", np.float32, (3,)),
            ("h", np.int32, (num_bins,)),
        ]
    )


class HistogramBinning:
    """Bin centers and spacing for a fixed number of signed-distance bins.

    Computed once and read-only afterwards. For ``num_bins >= 4``::

        center[0] = -1, center[num_bins - 1] = +1
        center[i] = 2 * (i - 1) / (num_bins - 3) - 1    for 1 <= i <= num_bins - 2
        step = 2 / (num_bins - 3)

    With 3 bins the single interior center is 0 and with 2 bins there are no
    interior bins; both use a step of 2.

    Args:
        num_bins: Number of histogram bins, between 2 and :data:`MAX_HIST_BINS`.
        stacklevel: Stack level of the degenerate-binning warning, counted from this constructor.
    """

    def __init__(self, num_bins: int, stacklevel: int = 2):
        num_bins = int(num_bins)
        if not 2 <= num_bins <= MAX_HIST_BINS:
            raise ValueError(f"num_bins must be in [2, {MAX_HIST_BINS}], got {num_bins}")
        if num_bins < 4:
            warnings.warn(
                f"A histogram with {num_bins} bins has no resolution inside the near-surface band; "
                f"observations are split into occluded/empty only.",
                stacklevel=stacklevel,
            )

        centers = np.empty(num_bins, dtype=np.float64)
        centers[0] = -1.0
        centers[-1] = 1.0
        if num_bins > 3:
            interior = np.arange(num_bins - 2, dtype=np.float32)
            centers[1:-1] = 2.0 * interior / np.float32(num_bins - 3) - 1.0
            self._step = 2.0 / float(num_bins - 3)
        else:
            if num_bins == 3:
                centers[1] = 0.0
            self._step = 2.0
        centers.setflags(write=False)

        self._num_bins = num_bins
        self._centers = centers

    @property
    def num_bins(self) -> int:
        return self._num_bins

    @property
    def centers(self) -> np.ndarray:
        """Read-only array of bin centers, shape (num_bins,)."""
        return self._centers

    @property
    def step(self) -> float:
        """Distance between neighbouring interior bin centers."""
        return self._step

    def center(self, index: int) -> float:
        """Center of bin ``index``; 0.0 for indices past the last bin."""
        if 0 <= index < self._num_bins:
            return float(self._centers[index])
        return 0.0

    def __repr__(self):
        return f"HistogramBinning(num_bins={self._num_bins}, step={self._step:g})"


class HistogramBin:
    """Host-side snapshot of one voxel's histogram.

    ``[]`` indexing is 0-based over the stored bins, while calling the histogram
    uses the 1-based bin numbers of the ``W_i`` formula: ``hist(i) == hist[i - 1]``.
    ``first`` is the occluded bin, ``last`` the empty bin.

    Args:
        counts: Bin counts, shape (num_bins,).
    """

    def __init__(self, counts):
        self._counts = np.array(counts, dtype=np.int32).reshape(-1)

    @classmethod
    def zeros(cls, num_bins: int) -> HistogramBin:
        return cls(np.zeros(num_bins, dtype=np.int32))

    @property
    def counts(self) -> np.ndarray:
        return self._counts

    def __len__(self):
        return len(self._counts)

    def __getitem__(self, index):
        return self._counts[index]

    def __setitem__(self, index, value):
        self._counts[index] = value

    def __call__(self, i: int) -> int:
        """Count of bin ``i`` using 1-based numbering, so ``hist(1)`` is the occluded bin."""
        if not 1 <= i <= len(self._counts):
            raise IndexError(f"Bin {i} is outside 1..{len(self._counts)}")
        return int(self._counts[i - 1])

    def __eq__(self, other):
        if not isinstance(other, HistogramBin):
            return NotImplemented
        return np.array_equal(self._counts, other._counts)

    def __repr__(self):
        return f"HistogramBin({self._counts.tolist()})"

    @property
    def first(self) -> int:
        return int(self._counts[0])

    @first.setter
    def first(self, value: int):
        self._counts[0] = value

    @property
    def last(self) -> int:
        return int(self._counts[-1])

    @last.setter
    def last(self, value: int):
        self._counts[-1] = value

    def increment(self, index: int, amount: int = 1):
        self._counts[index] += amount

    @property
    def total(self) -> int:
        return int(self._counts.sum(dtype=np.int64))

    def imbalance(self, i: int) -> int:
        """Cumulative signed imbalance ``W_i`` around the boundary after the first ``i`` bins.

        ``W_i = -(h[0] + ... + h[i-1]) + (h[i] + ... + h[num_bins-1])``, so ``W_0`` is
        the total count and ``W_num_bins`` its negation.
        """
        leading = int(self._counts[:i].sum(dtype=np.int64))
        return self.total - 2 * leading


class SortedHistogram:
    """Sorted multiset used to evaluate the histogram proximal step on the host.

    It starts out holding the bin centers; candidate values are inserted one at a
    time and :meth:`median` returns the middle element. For an even number of
    values the lower median is returned.

    Args:
        bin_centers: Initial values, usually :attr:`HistogramBinning.centers`.
    """

    def __init__(self, bin_centers=()):
        self._values = sorted(float(c) for c in bin_centers)

    def insert(self, value: float):
        bisect.insort(self._values, float(value))

    def median(self) -> float:
        if not self._values:
            raise ValueError("median() of an empty SortedHistogram")
        return self._values[(len(self._values) - 1) // 2]

    @property
    def values(self) -> list[float]:
        return list(self._values)

    def __len__(self):
        return len(self._values)


# -----------------------------------------------------------------------------
# Device functions
# -----------------------------------------------------------------------------


@wp.func
def histogram_update(
    hist: wp.array(dtype=wp.int32),
    base: int,
    num_bins: int,
    signed_distance: float,
    threshold: float,
):
    """Count one signed-distance observation in the histogram starting at ``hist[base]``.

    Observations at or beyond ``+threshold`` go to the empty bin, at or beyond
    ``-threshold`` to the occluded bin, and the band in between is bucketed
    linearly by ``round((sd + t) / (2 t) * (num_bins - 3))``. A two-bin
    histogram uses a threshold of 0. A NaN signed distance is not counted.
    """
    if wp.isnan(signed_distance):
        return

    t = float(threshold)
    if num_bins == 2:
        t = 0.0

    if signed_distance >= t:
        hist[base + num_bins - 1] = hist[base + num_bins - 1] + 1
        return

    if signed_distance <= -t:
        hist[base] = hist[base] + 1
        return

    # near surface, only reachable for t > 0
    k = wp.int32(wp.round((signed_distance + t) / (2.0 * t) * float(num_bins - 3)))
    hist[base + k] = hist[base + k] + 1


@wp.func
def _prox_candidate(
    centers: wp.array(dtype=wp.float32),
    num_bins: int,
    k: int,
    u: float,
    tau_lambda: float,
    total: int,
    leading: int,
) -> float:
    """Candidate ``k`` of the proximal median set.

    ``k < num_bins`` are the bin centers, ``k == num_bins`` is ``p_0 = u`` and
    ``k = num_bins + i`` is ``p_i``, where ``leading`` holds the count of the
    first ``i`` bins.
    """
    if k < num_bins:
        return centers[k]
    if k == num_bins:
        return u
    return u + tau_lambda * float(total - 2 * leading)


@wp.func
def histogram_prox(
    hist: wp.array(dtype=wp.int32),
    base: int,
    num_bins: int,
    centers: wp.array(dtype=wp.float32),
    u: float,
    tau: float,
    lam: float,
) -> float:
    """Proximal step of the histogram data term for one voxel.

    Returns the median of the bin centers and ``p_0 ... p_K``. The median is found
    by rank: candidate ``c`` is the median when fewer than ``rank + 1`` values are
    strictly below it and more than ``rank`` values are at or below it. This gives
    the same element as sorting the set, without per-thread scratch storage.
    """
    tau_lambda = tau * lam
    n = 2 * num_bins + 1
    rank = (n - 1) // 2

    total = int(0)
    for j in range(num_bins):
        total += hist[base + j]

    outer_leading = int(0)
    for k in range(n):
        if k > num_bins:
            outer_leading += hist[base + k - num_bins - 1]
        c = _prox_candidate(centers, num_bins, k, u, tau_lambda, total, outer_leading)

        num_less = int(0)
        num_less_equal = int(0)
        inner_leading = int(0)
        for m in range(n):
            if m > num_bins:
                inner_leading += hist[base + m - num_bins - 1]
            w = _prox_candidate(centers, num_bins, m, u, tau_lambda, total, inner_leading)
            if w < c:
                num_less += 1
            if w <= c:
                num_less_equal += 1

        if num_less <= rank and rank < num_less_equal:
            return c

    return u
