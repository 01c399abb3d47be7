from __future__ import annotations

"""Weight optimization for the count mixture model."""

from typing import Dict, Iterable, Optional, Tuple

import numpy as np
import quadprog
from scipy.optimize import lsq_linear, minimize, nnls

from .likelihood import EPS_LAM, LikelihoodCache, calc_log_l_vec, calc_q_all

DEFAULT_MIN_CHANGE = 1e-3
DEFAULT_IRWLS_ITERS = 50
DEFAULT_IRWLS_ITERS_SCORE = 25
STEP_SIZE = 0.3
EPS_QP = 1e-7
EPS_QP_CHOL = 1e-8


def _get_der_fast(
    s_mat: np.ndarray,
    s_mat_cross: np.ndarray,
    b: np.ndarray,
    prediction: np.ndarray,
    cache: Optional[LikelihoodCache],
    bulk_mode: bool = False,
) -> Tuple[np.ndarray, np.ndarray]:
    if bulk_mode:
        d1_vec = -2 * (np.log(prediction) - np.log(b)) / prediction
        d2_vec = -2 * (1 - np.log(prediction) + np.log(b)) / (prediction**2)
    else:
        _, d1_vec, d2_vec = calc_q_all(b, prediction, cache)

    grad = -d1_vec @ s_mat
    # s_mat_cross holds the upper-triangle column products, row by row
    n_types = s_mat.shape[1]
    rows, cols = np.triu_indices(n_types)
    hess = np.zeros((n_types, n_types), dtype=float)
    hess[rows, cols] = -d2_vec @ s_mat_cross
    hess[cols, rows] = hess[rows, cols]
    return grad, hess


def _psd(h_mat: np.ndarray, floor: float = 1e-3) -> np.ndarray:
    vals, vecs = np.linalg.eigh(h_mat)
    return (vecs * np.maximum(vals, floor)) @ vecs.T


def _cross_products(s_mat: np.ndarray) -> np.ndarray:
    rows, cols = np.triu_indices(s_mat.shape[1])
    return s_mat[:, rows] * s_mat[:, cols]


def _project_simplex(v: np.ndarray, total: float) -> np.ndarray:
    """Euclidean projection of ``v`` onto ``{x >= 0, sum(x) = total}``."""
    if total <= 0:
        return np.zeros_like(v)
    desc = -np.sort(-v)
    excess = np.cumsum(desc) - total
    active = np.flatnonzero(desc - excess / np.arange(1, v.size + 1) > 0)
    if active.size == 0:
        return np.zeros_like(v)
    k = active[-1]
    return np.clip(v - excess[k] / (k + 1), 0.0, None)


def _lsq_form(hess: np.ndarray, rhs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    # 1/2 x'Hx - r'x equals 1/2 |Ax - y|^2 up to a constant when A'A = H and A'y = r
    hess = hess + EPS_QP_CHOL * np.eye(rhs.size)
    try:
        root = np.linalg.cholesky(hess)
    except np.linalg.LinAlgError:
        vals, vecs = np.linalg.eigh(hess)
        root = vecs * np.sqrt(np.maximum(vals, EPS_QP_CHOL))
    return root.T, np.linalg.solve(root, rhs)


def _with_total(shifted: np.ndarray, lower: np.ndarray, total: Optional[float]) -> np.ndarray:
    if total is None:
        return shifted + lower
    return _project_simplex(shifted, total - float(lower.sum())) + lower


def _qp_slsqp(hess: np.ndarray, rhs: np.ndarray, lower: np.ndarray, total: Optional[float]) -> np.ndarray:
    constraints = []
    if total is not None:
        constraints.append({"type": "eq", "fun": lambda x: x.sum() - total, "jac": np.ones_like})
    res = minimize(
        lambda x: 0.5 * float(x @ hess @ x) - float(rhs @ x),
        np.maximum(lower, 0.0),
        jac=lambda x: hess @ x - rhs,
        bounds=[(float(lo), None) for lo in lower],
        constraints=constraints,
        method="SLSQP",
    )
    return res.x


def _qp_quadprog(hess: np.ndarray, rhs: np.ndarray, lower: np.ndarray, total: Optional[float]) -> np.ndarray:
    n = rhs.size
    if total is None:
        c_mat, b_vec, meq = np.eye(n), lower, 0
    else:
        c_mat = np.hstack([np.ones((n, 1)), np.eye(n)])
        b_vec = np.r_[total, lower]
        meq = 1
    try:
        return quadprog.solve_qp(hess, rhs, c_mat, b_vec, meq)[0]
    except ValueError:
        # inconsistent constraints after rounding
        return _qp_slsqp(hess, rhs, lower, total)


def _qp_nnls(hess: np.ndarray, rhs: np.ndarray, lower: np.ndarray, total: Optional[float]) -> np.ndarray:
    a_mat, y_vec = _lsq_form(hess, rhs)
    # x = lower + z with z >= 0
    shifted, _ = nnls(a_mat, y_vec - a_mat @ lower)
    return _with_total(shifted, lower, total)


def _qp_lsq_linear(hess: np.ndarray, rhs: np.ndarray, lower: np.ndarray, total: Optional[float]) -> np.ndarray:
    a_mat, y_vec = _lsq_form(hess, rhs)
    x = lsq_linear(a_mat, y_vec, bounds=(lower, np.inf)).x
    return _with_total(x - lower, lower, total)


_QP_BACKENDS = {
    "quadprog": _qp_quadprog,
    "slsqp": _qp_slsqp,
    "nnls": _qp_nnls,
    "lsq_linear": _qp_lsq_linear,
}
SOLVERS = tuple(_QP_BACKENDS)


def _solve_qp(
    hess: np.ndarray,
    rhs: np.ndarray,
    lower: np.ndarray,
    total: Optional[float] = None,
    solver: str = "quadprog",
) -> np.ndarray:
    """Minimize ``1/2 x'Hx - r'x`` over ``x >= lower``, optionally with ``sum(x) = total``."""
    if solver not in _QP_BACKENDS:
        raise ValueError(f"Unknown solver: {solver}. Expected one of {SOLVERS}.")
    return _QP_BACKENDS[solver](hess, rhs, np.asarray(lower, dtype=float), total)


def _scaled_qp(hess: np.ndarray, rhs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    # unit spectral norm plus a small ridge
    scale = np.linalg.norm(hess, 2)
    if scale > 0:
        hess, rhs = hess / scale, rhs / scale
    return hess + EPS_QP * np.eye(rhs.size), rhs


def solve_wls(
    s_mat: np.ndarray,
    s_mat_cross: np.ndarray,
    b: np.ndarray,
    initial_sol: np.ndarray,
    n_umi: float,
    cache: Optional[LikelihoodCache],
    bulk_mode: bool = False,
    constrain: bool = False,
    solver: str = "quadprog",
) -> np.ndarray:
    """One damped Newton step on the cached likelihood, as a QP in the step."""
    current = np.clip(initial_sol, 0.0, None)
    floor = max(EPS_LAM, n_umi * 1e-7)
    prediction = np.maximum(np.abs(s_mat @ current), floor)

    grad, hess = _get_der_fast(s_mat, s_mat_cross, b, prediction, cache, bulk_mode=bulk_mode)
    qp_hess, qp_rhs = _scaled_qp(_psd(hess), -grad)

    # the step may take any weight down to zero but not below
    total = 1.0 - float(current.sum()) if constrain else None
    step = _solve_qp(qp_hess, qp_rhs, -current, total, solver=solver)
    return np.clip(current + STEP_SIZE * step, 0.0, None)


def solve_irwls_weights(
    s_mat: np.ndarray,
    b: np.ndarray,
    n_umi: float,
    cache: Optional[LikelihoodCache],
    constrain: bool = True,
    n_iter: int = DEFAULT_IRWLS_ITERS,
    min_change: float = DEFAULT_MIN_CHANGE,
    bulk_mode: bool = False,
    solver: str = "quadprog",
) -> Dict[str, object]:
    """Iterate :func:`solve_wls` from the uniform start until the weights settle.

    ``converged`` is False when the budget runs out first or when the weights
    collapse to zero; callers treat that as a result, not an error.
    """
    b = np.asarray(b, dtype=float)
    if not bulk_mode:
        b = np.minimum(b, cache.k_val)

    n_types = s_mat.shape[1]
    weights = np.full(n_types, 1.0 / n_types)
    cross = _cross_products(s_mat)
    change = np.inf
    iterations = 0
    for iterations in range(1, n_iter + 1):
        updated = solve_wls(
            s_mat, cross, b, weights, n_umi, cache, bulk_mode=bulk_mode, constrain=constrain, solver=solver
        )
        change = float(np.abs(updated - weights).sum())
        weights = updated
        if change <= min_change:
            break
    converged = change <= min_change and float(weights.sum()) > 0
    return {"weights": weights, "converged": converged, "iterations": iterations}


def decompose_sparse(
    cell_type_profiles: np.ndarray,
    n_umi: float,
    bead: np.ndarray,
    cache: LikelihoodCache,
    custom_list: Iterable[int],
    score_mode: bool = False,
    constrain: bool = True,
    min_change: float = DEFAULT_MIN_CHANGE,
    n_iter: Optional[int] = None,
    solver: str = "quadprog",
) -> Dict[str, object] | float:
    """Fit a subset of types; returns normalized weights, or the score in score mode."""
    sub_profiles = cell_type_profiles[:, list(custom_list)]
    if n_iter is None:
        n_iter = DEFAULT_IRWLS_ITERS_SCORE if score_mode else DEFAULT_IRWLS_ITERS
    fit = solve_irwls_weights(
        sub_profiles, bead, n_umi, cache, constrain=constrain, n_iter=n_iter, min_change=min_change, solver=solver
    )
    if score_mode:
        return calc_log_l_vec(sub_profiles @ fit["weights"], bead, cache)
    total = float(fit["weights"].sum())
    if total > 0:
        fit["weights"] = fit["weights"] / total
    return fit


def decompose_full(
    cell_type_profiles: np.ndarray,
    n_umi: float,
    bead: np.ndarray,
    cache: Optional[LikelihoodCache],
    constrain: bool = True,
    n_iter: int = DEFAULT_IRWLS_ITERS,
    min_change: float = DEFAULT_MIN_CHANGE,
    bulk_mode: bool = False,
    solver: str = "quadprog",
) -> Dict[str, object]:
    """Unrestricted fit over every column of ``cell_type_profiles``."""
    return solve_irwls_weights(
        cell_type_profiles,
        bead,
        n_umi,
        cache,
        constrain=constrain,
        n_iter=n_iter,
        min_change=min_change,
        bulk_mode=bulk_mode,
        solver=solver,
    )
