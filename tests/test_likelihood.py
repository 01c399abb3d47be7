"""
Tests for likelihood table construction and lookup.
"""
import numpy as np
import pytest
from scipy.stats import poisson

from rctdpy.likelihood import (
    EPS_LAM,
    build_likelihood_cache,
    build_qmat_all,
    build_x_vals,
    cache_from_tables,
    calc_log_l_vec,
    calc_q_all,
    load_qmat_npz,
    qmat_gauss_hermite,
    qmat_heavy_tail,
    save_qmat_npz,
    set_likelihood_vars,
)

from conftest import K_MAX, SIGMA, X_MAX


class TestGrid:
    def test_x_vals_increasing_and_cover_range(self):
        x_vals = build_x_vals(50.0)
        assert np.all(np.diff(x_vals) > 0)
        assert x_vals[0] == pytest.approx(1e-4)
        assert x_vals[-1] > 50.0

    def test_first_buckets_follow_square_grid(self):
        x_vals = build_x_vals(50.0)
        # up to l = 49 every integer l opens its own bucket
        assert x_vals[:5] == pytest.approx(1e-6 * np.arange(10, 15) ** 2)

    def test_rejects_non_positive_range(self):
        with pytest.raises(ValueError, match="x_max must be positive"):
            build_x_vals(0.0)


class TestBuildCache:
    def test_rebuild_is_bit_identical(self, cache):
        again = build_likelihood_cache(SIGMA, k_max=K_MAX, x_max=X_MAX)
        assert np.array_equal(cache.q_mat, again.q_mat)
        assert np.array_equal(cache.sq_mat, again.sq_mat)
        assert np.array_equal(cache.x_vals, again.x_vals)

    def test_shape_and_count_cap(self, cache):
        assert cache.q_mat.shape == (K_MAX + 3, cache.x_vals.size)
        assert cache.k_val == K_MAX
        assert cache.sigma == SIGMA

    def test_tables_are_read_only(self, cache):
        with pytest.raises(ValueError):
            cache.q_mat[0, 0] = 0.0

    def test_values_are_log_probabilities(self, cache):
        assert np.all(cache.q_mat <= 1e-9)

    def test_small_sigma_matches_poisson(self):
        x_vals = np.array([0.5, 2.0, 10.0])
        y_vals = np.arange(6)
        q_mat = qmat_gauss_hermite(0.001, y_vals, x_vals)
        expected = poisson.logpmf(y_vals[:, None], x_vals[None, :])
        assert q_mat == pytest.approx(expected, abs=1e-3)

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown likelihood method"):
            build_likelihood_cache(0.5, k_max=5, x_max=5.0, method="bogus")

    def test_non_positive_sigma(self):
        with pytest.raises(ValueError, match="sigma must be positive"):
            build_likelihood_cache(0.0)

    def test_mismatched_table(self):
        with pytest.raises(ValueError, match="does not match"):
            set_likelihood_vars(np.zeros((10, 4)), np.arange(1.0, 6.0))



class TestHeavyTail:
    def test_probabilities_sum_to_one_over_counts(self):
        x_vals = np.array([0.5, 2.0])
        q_mat = qmat_heavy_tail(0.3, np.arange(60), x_vals)
        assert np.exp(q_mat).sum(axis=0) == pytest.approx([1.0, 1.0], abs=5e-3)

    def test_rebuild_is_bit_identical(self):
        first = build_likelihood_cache(0.4, k_max=10, x_max=5.0, method="heavy_tail")
        second = build_likelihood_cache(0.4, k_max=10, x_max=5.0, method="heavy_tail")
        assert np.array_equal(first.q_mat, second.q_mat)
        assert np.array_equal(first.sq_mat, second.sq_mat)

    def test_small_sigma_matches_gauss_hermite(self):
        x_vals = np.array([0.5, 5.0, 20.0])
        y_vals = np.arange(41)
        heavy = qmat_heavy_tail(0.02, y_vals, x_vals)
        gauss = qmat_gauss_hermite(0.02, y_vals, x_vals)
        assert np.exp(heavy) == pytest.approx(np.exp(gauss), abs=2e-3)

    def test_tables_for_several_sigmas(self):
        qmat_all, x_vals = build_qmat_all([30, 60], k_max=5, x_max=5.0, method="heavy_tail")
        assert sorted(qmat_all) == ["30", "60"]
        assert qmat_all["30"].shape == (8, x_vals.size)
        assert np.all(qmat_all["60"] <= 1e-9)
        assert not np.array_equal(qmat_all["30"], qmat_all["60"])


class TestLookup:
    def test_knots_are_exact(self, cache):
        j = np.arange(5, 40)
        lam = cache.x_vals[j]
        for y in (0, 3, 17):
            d0, _, _ = calc_q_all(np.full(j.size, y), lam, cache)
            assert d0 == pytest.approx(cache.q_mat[y, j], rel=1e-6, abs=1e-8)

    def test_expected_counts_clipped_to_grid(self, cache):
        y = np.array([4, 4])
        top = cache.x_vals[-1] - EPS_LAM
        assert calc_log_l_vec(np.array([1e6, 1e7]), y, cache) == pytest.approx(
            calc_log_l_vec(np.array([top, top]), y, cache)
        )
        assert calc_log_l_vec(np.array([0.0]), np.array([0]), cache) == pytest.approx(
            calc_log_l_vec(np.array([EPS_LAM]), np.array([0]), cache)
        )

    def test_counts_clipped_to_k_max(self, cache):
        lam = np.array([50.0])
        assert calc_log_l_vec(lam, np.array([10 * K_MAX]), cache) == calc_log_l_vec(
            lam, np.array([K_MAX]), cache
        )

    def test_score_is_negative_log_likelihood(self, cache):
        lam = np.array([5.0, 20.0, 40.0])
        y = np.array([5, 20, 40])
        vec = calc_log_l_vec(lam, y, cache, return_vec=True)
        assert np.all(vec > 0)
        assert calc_log_l_vec(lam, y, cache) == pytest.approx(vec.sum())

    def test_likelihood_peaks_near_observed_count(self, cache):
        lam = np.linspace(5.0, 60.0, 56)
        scores = calc_log_l_vec(lam, np.full(lam.size, 30), cache, return_vec=True)
        assert 20.0 < lam[np.argmin(scores)] < 35.0

    def test_derivative_matches_finite_difference(self, cache):
        lam = np.array([12.3])
        y = np.array([10])
        h = 1e-4
        d0_hi, _, _ = calc_q_all(y, lam + h, cache)
        d0_lo, _, _ = calc_q_all(y, lam - h, cache)
        _, d1, _ = calc_q_all(y, lam, cache)
        assert d1[0] == pytest.approx((d0_hi[0] - d0_lo[0]) / (2 * h), rel=1e-3)


class TestPersistence:
    def test_npz_roundtrip(self, tmp_path):
        qmat_all, x_vals = build_qmat_all([40, 50], k_max=10, x_max=20.0)
        path = str(tmp_path / "qmat.npz")
        save_qmat_npz(path, qmat_all, x_vals)
        loaded, loaded_x = load_qmat_npz(path)
        assert sorted(loaded) == ["40", "50"]
        assert np.array_equal(loaded_x, x_vals)
        assert np.array_equal(loaded["40"], qmat_all["40"])

    def test_neglog_tables_are_converted(self, tmp_path):
        qmat_all, x_vals = build_qmat_all([40], k_max=10, x_max=20.0)
        path = str(tmp_path / "neglog.npz")
        save_qmat_npz(path, {"40": -qmat_all["40"]}, x_vals)
        loaded, _ = load_qmat_npz(path, qmat_mode="neglog")
        assert loaded["40"] == pytest.approx(qmat_all["40"])
        # -log p files load with the right sign without naming the encoding
        default, _ = load_qmat_npz(path)
        assert default["40"] == pytest.approx(qmat_all["40"])

    def test_probability_tables_are_converted(self, tmp_path):
        qmat_all, x_vals = build_qmat_all([40], k_max=10, x_max=20.0)
        path = str(tmp_path / "prob.npz")
        save_qmat_npz(path, {"40": np.exp(qmat_all["40"])}, x_vals)
        loaded, _ = load_qmat_npz(path)
        assert loaded["40"] == pytest.approx(qmat_all["40"])

    def test_cache_from_tables_requires_sigma(self):
        qmat_all, x_vals = build_qmat_all([40], k_max=10, x_max=20.0)
        assert cache_from_tables(qmat_all, x_vals, 0.4).sigma == 0.4
        with pytest.raises(ValueError, match="not available"):
            cache_from_tables(qmat_all, x_vals, 0.7)
