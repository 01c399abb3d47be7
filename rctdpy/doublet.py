from __future__ import annotations

"""Per-pixel singlet / doublet fitting and classification."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from .config import RCTDConfig
from .core import decompose_full, decompose_sparse
from .data import CellTypeProfile, SpatialDataset
from .likelihood import LikelihoodCache, calc_log_l_vec

MODES = ("full", "doublet")

ProgressCallback = Callable[[int, int], None]


class SpotClass(str, Enum):
    REJECT = "reject"
    SINGLET = "singlet"
    DOUBLET_CERTAIN = "doublet_certain"
    DOUBLET_UNCERTAIN = "doublet_uncertain"


SPOT_LEVELS = [c.value for c in SpotClass]


@dataclass(frozen=True)
class PixelFitResult:
    """Outcome of fitting one pixel.

    ``second_type`` is only set for the two doublet classes. ``doublet_weights``
    follows the (first_type, second_type) order and is zero for rejected
    pixels.
    """

    barcode: str
    spot_class: SpotClass
    first_type: Optional[str]
    second_type: Optional[str]
    first_class: bool
    second_class: bool
    min_score: float
    singlet_score: float
    conv_all: bool
    conv_doublet: bool
    all_weights: np.ndarray
    doublet_weights: np.ndarray


@dataclass(frozen=True)
class SpotCall:
    spot_class: SpotClass
    first_type: Optional[str]
    second_type: Optional[str]
    first_class: bool
    second_class: bool
    doublet_weights: np.ndarray


def classify_spot(
    n_umi: float,
    pair: Tuple[str, str],
    pair_weights: np.ndarray,
    pair_confident: Tuple[bool, bool],
    min_score: float,
    best_singlet: str,
    singlet_score: float,
    conv_doublet: bool,
    config: RCTDConfig,
) -> SpotCall:
    """Map the fitted scores of one pixel onto a :class:`SpotClass`.

    ``pair`` must be in canonical type order so equal weights keep that order.
    """
    if not config.umi_in_range(n_umi) or not conv_doublet:
        return SpotCall(SpotClass.REJECT, None, None, False, False, np.zeros(2))

    pair_weights = np.asarray(pair_weights, dtype=float)
    order = [0, 1] if pair_weights[0] >= pair_weights[1] else [1, 0]
    types = [pair[i] for i in order]
    weights = pair_weights[order]

    if singlet_score - min_score < config.doublet_threshold:
        return SpotCall(SpotClass.SINGLET, best_singlet, None, True, False, weights)
    if all(pair_confident) and weights[1] >= config.doublet_weight_threshold:
        return SpotCall(SpotClass.DOUBLET_CERTAIN, types[0], types[1], True, True, weights)
    return SpotCall(SpotClass.DOUBLET_UNCERTAIN, types[0], types[1], True, False, weights)


def _candidates(all_weights: np.ndarray, thresh: float) -> List[int]:
    n_types = all_weights.size
    candidates = [i for i in range(n_types) if all_weights[i] > thresh]
    if not candidates:
        return list(range(min(3, n_types)))
    if len(candidates) == 1:
        other = 1 if candidates[0] == 0 else 0
        return sorted(candidates + [other])
    return candidates


def _normalize(weights: np.ndarray) -> np.ndarray:
    total = float(np.sum(weights))
    return weights / total if total > 0 else weights


def _rejected(barcode: str, n_types: int) -> PixelFitResult:
    return PixelFitResult(
        barcode=barcode,
        spot_class=SpotClass.REJECT,
        first_type=None,
        second_type=None,
        first_class=False,
        second_class=False,
        min_score=np.nan,
        singlet_score=np.nan,
        conv_all=False,
        conv_doublet=False,
        all_weights=np.zeros(n_types),
        doublet_weights=np.zeros(2),
    )


def fit_pixel(
    bead: np.ndarray,
    n_umi: float,
    profiles: np.ndarray,
    cell_type_names: Sequence[str],
    cache: LikelihoodCache,
    config: RCTDConfig,
    mode: str = "doublet",
    barcode: str = "",
) -> PixelFitResult:
    """Fit one pixel against the per-UMI rate matrix ``profiles`` (genes x types)."""
    n_types = len(cell_type_names)
    if not config.umi_in_range(n_umi):
        return _rejected(barcode, n_types)

    cell_type_profiles = np.asarray(profiles, dtype=float) * n_umi
    bead = np.asarray(bead, dtype=float)
    score_cache: Dict[Tuple[int, ...], float] = {}

    def _score(types: Tuple[int, ...]) -> float:
        if types not in score_cache:
            score_cache[types] = float(
                decompose_sparse(
                    cell_type_profiles,
                    n_umi,
                    bead,
                    cache,
                    custom_list=types,
                    score_mode=True,
                    constrain=config.constrain,
                    min_change=config.min_change,
                    n_iter=config.n_iter_score,
                    solver=config.solver,
                )
            )
        return score_cache[types]

    results_all = decompose_full(
        cell_type_profiles,
        n_umi,
        bead,
        cache,
        constrain=config.constrain,
        n_iter=config.n_iter,
        min_change=config.min_change,
        solver=config.solver,
    )
    raw_weights = results_all["weights"]
    all_weights = _normalize(raw_weights)
    conv_all = bool(results_all["converged"])

    if mode == "full":
        top = int(np.argmax(all_weights))
        if not conv_all:
            return replace(_rejected(barcode, n_types), all_weights=all_weights)
        prediction = cell_type_profiles @ raw_weights
        return PixelFitResult(
            barcode=barcode,
            spot_class=SpotClass.SINGLET,
            first_type=cell_type_names[top],
            second_type=None,
            first_class=bool(all_weights[top] >= 1.0 - config.doublet_weight_threshold),
            second_class=False,
            min_score=calc_log_l_vec(prediction, bead, cache),
            singlet_score=_score((top,)),
            conv_all=True,
            conv_doublet=False,
            all_weights=all_weights,
            doublet_weights=np.zeros(2),
        )

    candidates = _candidates(raw_weights, config.initial_weight_thresh)

    # strict comparisons keep the first pair / type in canonical order on ties
    min_score = np.inf
    best_pair = (candidates[0], candidates[1])
    for a, i in enumerate(candidates[:-1]):
        for j in candidates[a + 1 :]:
            score = _score((i, j))
            if score < min_score:
                min_score = score
                best_pair = (i, j)

    singlet_score = np.inf
    best_singlet = candidates[0]
    for i in candidates:
        score = _score((i,))
        if score < singlet_score:
            singlet_score = score
            best_singlet = i

    cutoff = min_score + config.confidence_threshold
    near_pairs = [key for key, val in score_cache.items() if len(key) == 2 and val < cutoff]
    pair_confident = tuple(all(t in key for key in near_pairs) for t in best_pair)

    doublet_results = decompose_sparse(
        cell_type_profiles,
        n_umi,
        bead,
        cache,
        custom_list=best_pair,
        score_mode=False,
        constrain=config.constrain,
        min_change=config.min_change,
        n_iter=config.n_iter,
        solver=config.solver,
    )
    conv_doublet = bool(doublet_results["converged"])

    call = classify_spot(
        n_umi,
        (cell_type_names[best_pair[0]], cell_type_names[best_pair[1]]),
        doublet_results["weights"],
        pair_confident,
        min_score,
        cell_type_names[best_singlet],
        singlet_score,
        conv_doublet,
        config,
    )
    return PixelFitResult(
        barcode=barcode,
        spot_class=call.spot_class,
        first_type=call.first_type,
        second_type=call.second_type,
        first_class=call.first_class,
        second_class=call.second_class,
        min_score=float(min_score),
        singlet_score=float(singlet_score),
        conv_all=conv_all,
        conv_doublet=conv_doublet,
        all_weights=all_weights,
        doublet_weights=call.doublet_weights,
    )


_FIT_CONTEXT: Dict[str, object] = {}


def _init_fit_worker(context: Dict[str, object]) -> None:
    global _FIT_CONTEXT
    _FIT_CONTEXT = context


def _bead(counts: sp.csc_matrix, index: int) -> np.ndarray:
    return counts[:, index].toarray().ravel()


def _fit_spot(index: int) -> Tuple[int, PixelFitResult]:
    ctx = _FIT_CONTEXT
    result = fit_pixel(
        _bead(ctx["counts"], index),
        float(ctx["n_umi"][index]),
        ctx["profiles"],
        ctx["cell_type_names"],
        ctx["cache"],
        ctx["config"],
        mode=ctx["mode"],
        barcode=ctx["barcodes"][index],
    )
    return index, result


def fit_pixels(
    dataset: SpatialDataset,
    profiles: CellTypeProfile,
    cache: LikelihoodCache,
    gene_list: Sequence[str],
    mode: str = "doublet",
    config: Optional[RCTDConfig] = None,
    n_jobs: int = 1,
    progress: Optional[ProgressCallback] = None,
) -> List[PixelFitResult]:
    """Fit every pixel of ``dataset``; results come back in barcode order.

    Inputs are checked up front so a malformed dataset fails before any pixel
    is fitted.
    """
    if mode not in MODES:
        raise ValueError(f"Unknown mode: {mode}. Expected one of {MODES}.")
    if config is None:
        config = RCTDConfig()
    if mode == "doublet" and profiles.n_cell_types < 2:
        raise ValueError("fit_pixels: doublet mode needs at least two cell types.")
    gene_list = list(gene_list)
    if not gene_list:
        raise ValueError("fit_pixels: gene_list is empty.")

    counts = dataset.counts_for(gene_list)
    rates = profiles.matrix(gene_list)
    n_umi = dataset.n_umi.to_numpy(dtype=float)
    barcodes = list(dataset.barcodes)
    n_pixels = len(barcodes)
    results: List[Optional[PixelFitResult]] = [None] * n_pixels

    if n_jobs > 1 and n_pixels > 1:
        import multiprocessing as mp

        ctx = mp.get_context("fork") if "fork" in mp.get_all_start_methods() else mp.get_context()
        context = {
            "counts": counts,
            "n_umi": n_umi,
            "profiles": rates,
            "cell_type_names": list(profiles.cell_type_names),
            "cache": cache,
            "config": config,
            "mode": mode,
            "barcodes": barcodes,
        }
        with ctx.Pool(processes=n_jobs, initializer=_init_fit_worker, initargs=(context,)) as pool:
            for done, (idx, result) in enumerate(pool.imap_unordered(_fit_spot, range(n_pixels), chunksize=4), 1):
                results[idx] = result
                if progress is not None:
                    progress(done, n_pixels)
    else:
        for i in range(n_pixels):
            results[i] = fit_pixel(
                _bead(counts, i),
                float(n_umi[i]),
                rates,
                profiles.cell_type_names,
                cache,
                config,
                mode=mode,
                barcode=barcodes[i],
            )
            if progress is not None:
                progress(i + 1, n_pixels)
    return results
