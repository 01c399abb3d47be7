"""
Shared fixtures: a three-type marker reference and a small likelihood cache.

Each type expresses its own block of ten marker genes at a high rate and
every other gene at a low background rate, so pixels built from known mixtures
have an unambiguous best fit.
"""
import numpy as np
import pandas as pd
import pytest

from rctdpy.config import RCTDConfig
from rctdpy.data import CellTypeProfile, SpatialDataset
from rctdpy.likelihood import build_likelihood_cache

N_MARKERS = 10
HIGH_RATE = 0.098
LOW_RATE = 0.001
SIGMA = 0.3
K_MAX = 100
X_MAX = 150.0


def marker_profile(cell_types=("A", "B", "C"), duplicate_of=None):
    """Rates (genes x types); ``duplicate_of`` maps a type to the type it copies."""
    blocks = [t for t in cell_types if not (duplicate_of and t in duplicate_of)]
    genes = [f"g{i}" for i in range(N_MARKERS * len(blocks))]
    rates = pd.DataFrame(LOW_RATE, index=genes, columns=list(cell_types))
    for b, t in enumerate(blocks):
        rates.iloc[b * N_MARKERS : (b + 1) * N_MARKERS, rates.columns.get_loc(t)] = HIGH_RATE
    if duplicate_of:
        for t, src in duplicate_of.items():
            rates[t] = rates[src]
    return CellTypeProfile(means=rates)


def mixture_counts(profile, mix, n_umi=1000):
    """Rounded expected counts of a pixel with the given ``{type: weight}`` mix."""
    rates = profile.means
    expected = sum(w * rates[t] for t, w in mix.items()) * n_umi
    return np.round(expected.to_numpy()).astype(float)


def make_dataset(profile, pixels):
    """``pixels`` maps barcode -> count vector over the profile genes."""
    barcodes = list(pixels)
    counts = np.column_stack([pixels[b] for b in barcodes])
    coords = pd.DataFrame(
        {"x": np.arange(len(barcodes), dtype=float), "y": np.zeros(len(barcodes))},
        index=barcodes,
    )
    return SpatialDataset.from_counts(counts, coords, genes=list(profile.means.index), barcodes=barcodes)


@pytest.fixture(scope="session")
def cache():
    return build_likelihood_cache(SIGMA, k_max=K_MAX, x_max=X_MAX)


@pytest.fixture
def profile():
    return marker_profile()


@pytest.fixture
def config():
    return RCTDConfig()


@pytest.fixture
def mixed_dataset(profile):
    pixels = {
        "pure_a": mixture_counts(profile, {"A": 1.0}),
        "pure_c": mixture_counts(profile, {"C": 1.0}, n_umi=800),
        "ab_doublet": mixture_counts(profile, {"A": 0.4, "B": 0.6}),
        "bc_doublet": mixture_counts(profile, {"B": 0.5, "C": 0.5}, n_umi=1200),
        "low_umi": np.r_[np.ones(5), np.zeros(25)],
    }
    return make_dataset(profile, pixels)
