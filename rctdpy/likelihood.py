from __future__ import annotations

"""Precomputed count likelihoods and their spline lookup."""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
from numpy.polynomial.hermite import hermgauss
from scipy.special import erf, gammaln, logsumexp

DELTA = 1e-6
EPS_LAM = 1e-4
DEFAULT_K_MAX = 300
DEFAULT_X_MAX = 200.0
DEFAULT_GH_N = 30


@dataclass(frozen=True)
class LikelihoodCache:
    """Log-probability table ``q_mat[y, j]`` on knots ``x_vals`` plus spline terms."""

    q_mat: np.ndarray
    x_vals: np.ndarray
    sq_mat: np.ndarray
    k_val: int
    sigma: Optional[float] = None

    def __post_init__(self) -> None:
        for arr in (self.q_mat, self.x_vals, self.sq_mat):
            arr.setflags(write=False)


def default_sigma_values() -> List[int]:
    return list(range(10, 71)) + [i * 2 for i in range(36, 101)]


def sigma_key(sigma: float) -> str:
    return str(int(round(sigma * 100)))


def _bucket_index(l_val: np.ndarray) -> np.ndarray:
    m_r = np.minimum(l_val - 9, 40) + np.maximum(
        np.ceil(np.sqrt(np.maximum(l_val - 48.7499, 0) * 4)) - 2, 0
    )
    return m_r.astype(int) - 1


def build_x_vals(x_max: float, delta: float = DELTA) -> np.ndarray:
    """Knots on the square-root grid; knot ``j`` starts bucket ``j``."""
    if x_max <= 0:
        raise ValueError("x_max must be positive.")
    l_max = max(int(np.floor(np.sqrt(x_max / delta))), 10)
    l_vals = np.arange(10, l_max + 1)
    m = np.maximum(_bucket_index(l_vals), 0)
    starts = np.concatenate([[True], m[1:] != m[:-1]])
    x_vals = delta * l_vals[starts].astype(float) ** 2
    return np.append(x_vals, delta * (l_max + 1) ** 2)


def qmat_gauss_hermite(sigma: float, y_vals: np.ndarray, x_vals: np.ndarray, gh_n: int = DEFAULT_GH_N) -> np.ndarray:
    """log P(y | x) for a Poisson rate perturbed by a log-normal factor."""
    nodes, weights = hermgauss(gh_n)
    zs = np.sqrt(2.0) * nodes
    log_w = np.log(weights) - 0.5 * np.log(np.pi)
    exp_sig_z = np.exp(sigma * zs)
    log_x = np.log(x_vals)
    q_mat = np.empty((y_vals.size, x_vals.size), dtype=float)
    for yi, y in enumerate(y_vals):
        log_terms = (
            log_w[None, :]
            + y * (log_x[:, None] + sigma * zs[None, :])
            - x_vals[:, None] * exp_sig_z[None, :]
            - gammaln(y + 1.0)
        )
        q_mat[yi, :] = logsumexp(log_terms, axis=1)
    return q_mat


def _ht_pdf(z: np.ndarray, sigma: float) -> np.ndarray:
    # Gaussian core with quadratic-decay tails beyond 3 standard deviations.
    x = z / sigma
    a = 4.0 / 9.0 * np.exp(-9.0 / 2.0) / np.sqrt(2.0 * np.pi)
    c = 7.0 / 3.0
    norm = 1.0 / ((a / (3.0 - c) - 0.5 * (1.0 + erf(-3.0 / np.sqrt(2.0)))) * 2.0 + 1.0)
    p = np.zeros_like(x, dtype=float)
    mask = np.abs(x) < 3.0
    p[mask] = norm / np.sqrt(2.0 * np.pi) * np.exp(-(x[mask] ** 2) / 2.0)
    p[~mask] = norm * a / (np.abs(x[~mask]) - c) ** 2
    return p / sigma


def qmat_heavy_tail(
    sigma: float,
    y_vals: np.ndarray,
    x_vals: np.ndarray,
    *,
    ny: int = 5000,
    gamma: float = 0.004,
) -> np.ndarray:
    """log P(y | x) under the heavy-tailed log-normal noise, by grid integration."""
    z_grid = np.arange(-ny, ny + 1, dtype=float) * gamma
    log_p = np.log(_ht_pdf(z_grid, sigma))
    exp_z = np.exp(z_grid)
    log_x = np.log(x_vals)
    q_mat = np.empty((y_vals.size, x_vals.size), dtype=float)
    for yi, y in enumerate(y_vals):
        log_s = -np.outer(exp_z, x_vals) + (y * z_grid + log_p)[:, None]
        log_s = log_s - gammaln(y + 1.0) + (y * log_x)[None, :]
        q_mat[yi, :] = logsumexp(log_s, axis=0) + np.log(gamma)
    return q_mat


def solve_sq(q_mat: np.ndarray, x_vals: np.ndarray) -> np.ndarray:
    """Natural cubic spline second derivatives for every row of ``q_mat``."""
    n = q_mat.shape[1] - 1
    deltas = np.diff(x_vals)
    m_mat = np.zeros((n - 1, n - 1), dtype=float)
    np.fill_diagonal(m_mat, 2 * (deltas[0 : n - 1] + deltas[1:n]))
    idx = np.arange(1, n - 1)
    m_mat[idx, idx - 1] = deltas[1 : n - 1]
    m_mat[idx - 1, idx] = deltas[1 : n - 1]

    f_b = np.diff(q_mat.T, axis=0) / deltas[:, None]
    f_bd = 6 * np.diff(f_b, axis=0)
    sq = np.linalg.solve(m_mat, f_bd).T
    pad = np.zeros((q_mat.shape[0], 1), dtype=float)
    return np.concatenate([pad, sq, pad], axis=1)


def set_likelihood_vars(q_mat: np.ndarray, x_vals: np.ndarray, sigma: Optional[float] = None) -> LikelihoodCache:
    """Wrap a log-probability table into an immutable cache."""
    q_mat = np.array(q_mat, dtype=float)
    x_vals = np.array(x_vals, dtype=float)
    if q_mat.ndim != 2 or q_mat.shape[1] != x_vals.size:
        raise ValueError(f"q_mat shape {q_mat.shape} does not match {x_vals.size} x knots.")
    if q_mat.shape[0] < 4 or x_vals.size < 3:
        raise ValueError("Likelihood table needs at least 4 count rows and 3 knots.")
    return LikelihoodCache(
        q_mat=q_mat,
        x_vals=x_vals,
        sq_mat=solve_sq(q_mat, x_vals),
        k_val=q_mat.shape[0] - 3,
        sigma=sigma,
    )


def build_likelihood_cache(
    sigma: float,
    *,
    k_max: int = DEFAULT_K_MAX,
    x_max: float = DEFAULT_X_MAX,
    method: str = "gh",
    gh_n: int = DEFAULT_GH_N,
) -> LikelihoodCache:
    """Build the cache for one noise level; a pure function of its arguments."""
    if sigma <= 0:
        raise ValueError(f"sigma must be positive, got {sigma}.")
    y_vals = np.arange(k_max + 3, dtype=int)
    x_vals = build_x_vals(x_max)
    if method == "gh":
        q_mat = qmat_gauss_hermite(sigma, y_vals, x_vals, gh_n=gh_n)
    elif method == "heavy_tail":
        q_mat = qmat_heavy_tail(sigma, y_vals, x_vals)
    else:
        raise ValueError(f"Unknown likelihood method: {method}")
    return set_likelihood_vars(q_mat, x_vals, sigma=sigma)


def build_qmat_all(
    sigma_values: Iterable[int],
    *,
    k_max: int = DEFAULT_K_MAX,
    x_max: float = DEFAULT_X_MAX,
    method: str = "gh",
    gh_n: int = DEFAULT_GH_N,
) -> Tuple[Dict[str, np.ndarray], np.ndarray]:
    """Tables for several noise levels, keyed by ``round(sigma * 100)``."""
    x_vals = build_x_vals(x_max)
    y_vals = np.arange(k_max + 3, dtype=int)
    qmat_all = {}
    for s in sigma_values:
        if method == "gh":
            qmat_all[str(s)] = qmat_gauss_hermite(s / 100.0, y_vals, x_vals, gh_n=gh_n)
        elif method == "heavy_tail":
            qmat_all[str(s)] = qmat_heavy_tail(s / 100.0, y_vals, x_vals)
        else:
            raise ValueError(f"Unknown likelihood method: {method}")
    return qmat_all, x_vals


def save_qmat_npz(path: str, qmat_all: Dict[str, np.ndarray], x_vals: np.ndarray) -> None:
    np.savez_compressed(path, X_vals=x_vals, **qmat_all)


def _to_log(q_mat: np.ndarray, mode: str) -> np.ndarray:
    mode = mode.lower()
    if mode not in {"neglog", "log", "prob", "raw", "auto"}:
        raise ValueError(f"Unknown qmat mode: {mode}")
    if mode == "auto":
        q_min = float(np.nanmin(q_mat))
        q_max = float(np.nanmax(q_mat))
        if q_min >= 0.0 and q_max <= 1.0:
            mode = "prob"
        elif q_min >= 0.0:
            mode = "neglog"
        else:
            mode = "log"
    if mode == "prob":
        return np.log(np.clip(q_mat, 1e-300, 1.0))
    if mode == "neglog":
        return -q_mat
    return q_mat


def load_qmat_npz(path: str, qmat_mode: str = "auto") -> Tuple[Dict[str, np.ndarray], np.ndarray]:
    """Load a table set; every table is returned as log-probabilities.

    With ``qmat_mode="auto"`` the encoding is read off the value range: all
    values in [0, 1] are probabilities, other non-negative tables are
    ``-log p`` and anything with negative entries is ``log p``.
    """
    with np.load(path) as data:
        x_vals = data["X_vals"]
        qmat_all = {k: _to_log(data[k], qmat_mode) for k in data.files if k != "X_vals"}
    return qmat_all, x_vals


def cache_from_tables(qmat_all: Dict[str, np.ndarray], x_vals: np.ndarray, sigma: float) -> LikelihoodCache:
    key = sigma_key(sigma)
    if key not in qmat_all:
        raise ValueError(f"sigma={sigma} (key {key}) is not available in qmat data.")
    return set_likelihood_vars(qmat_all[key], x_vals, sigma=sigma)


def calc_q_all(y: np.ndarray, lam: np.ndarray, cache: LikelihoodCache) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Spline value, first and second derivative of log P(y | lam) in lam."""
    y = np.minimum(np.asarray(y, dtype=float), cache.k_val).astype(int)
    lam = np.asarray(lam, dtype=float)

    x_max = float(cache.x_vals[-1])
    lam = np.clip(lam, EPS_LAM, x_max - EPS_LAM)
    l_val = np.floor(np.sqrt(lam / DELTA)).astype(int)
    m = np.clip(_bucket_index(l_val), 0, cache.x_vals.size - 2)

    x_lo = cache.x_vals[m]
    width = cache.x_vals[m + 1] - x_lo
    q_lo, q_hi = cache.q_mat[y, m], cache.q_mat[y, m + 1]
    s_lo, s_hi = cache.sq_mat[y, m] / width, cache.sq_mat[y, m + 1] / width

    # distances to the left and right knot of the bucket
    u = lam - x_lo
    v = width - u
    slope_hi = q_hi / width - s_hi * width ** 2 / 6.0
    slope_lo = q_lo / width - s_lo * width ** 2 / 6.0

    d0 = (s_hi * u ** 3 + s_lo * v ** 3) / 6.0 + slope_hi * u + slope_lo * v
    d1 = (s_hi * u ** 2 - s_lo * v ** 2) / 2.0 + slope_hi - slope_lo
    d2 = s_hi * u + s_lo * v
    return d0, d1, d2


def calc_log_l_vec(lam: np.ndarray, y: np.ndarray, cache: LikelihoodCache, return_vec: bool = False) -> float | np.ndarray:
    """Negative log-likelihood of counts ``y`` at expected counts ``lam``."""
    d0, _, _ = calc_q_all(y, lam, cache)
    if return_vec:
        return -d0
    return float(-np.sum(d0))
