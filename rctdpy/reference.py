"""Reference profiles, gene selection, platform-effect correction and sigma choice."""

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .core import decompose_full
from .data import CellTypeProfile, SpatialDataset
from .likelihood import calc_log_l_vec, default_sigma_values, set_likelihood_vars

MIN_OBS_BULK = 10
DEFAULT_MIN_CHANGE_BULK = 1e-4
DEFAULT_IRWLS_ITERS_BULK = 100


def _to_dense(x) -> np.ndarray:
    return x.toarray() if sp.issparse(x) else np.asarray(x)


def get_cell_type_info(
    counts,
    genes: Sequence[str],
    cell_types: pd.Series,
    n_umi: Optional[pd.Series] = None,
    *,
    ref_umi_min: int = 100,
    ref_n_cells_min: int = 25,
    ref_n_cells_max: int = 10000,
    rng: Optional[np.random.RandomState] = None,
) -> CellTypeProfile:
    """Mean UMI-normalized expression per cell type from reference cells (genes x cells).

    Unlabelled cells and cells below ``ref_umi_min`` are dropped; types with
    more than ``ref_n_cells_max`` cells are down-sampled with ``rng``.
    """
    counts = _to_dense(counts).astype(float)
    cells = pd.DataFrame(
        {
            "cell_type": cell_types.to_numpy(),
            "n_umi": counts.sum(axis=0) if n_umi is None else np.asarray(n_umi, dtype=float),
        }
    )
    labelled = cells["cell_type"].notna() & (cells["cell_type"].astype(str) != "")
    cells = cells[labelled].copy()
    cells["cell_type"] = cells["cell_type"].astype(str)

    # canonical order: alphabetical
    categories = sorted(cells["cell_type"].unique().tolist())
    cells = cells[cells["n_umi"] >= ref_umi_min]

    sizes = cells["cell_type"].value_counts().reindex(categories, fill_value=0)
    if sizes.max() > ref_n_cells_max:
        if rng is None:
            rng = np.random.RandomState()
        picked = []
        for ct in categories:
            members = cells.index[cells["cell_type"] == ct].to_numpy()
            picked.extend(rng.choice(members, size=min(ref_n_cells_max, members.size), replace=False))
        cells = cells.loc[sorted(picked)]
        sizes = cells["cell_type"].value_counts().reindex(categories, fill_value=0)
    if sizes.min() < ref_n_cells_min:
        raise ValueError(
            f"Reference: need at least {ref_n_cells_min} cells per cell type; "
            f"{sizes.idxmin()} has {sizes.min()}."
        )

    # cells.index still holds column positions into counts
    normed = counts[:, cells.index.to_numpy()] / cells["n_umi"].to_numpy()
    labels = cells["cell_type"].to_numpy()
    means = np.column_stack([normed[:, labels == ct].mean(axis=1) for ct in categories])
    means_df = pd.DataFrame(means, index=[str(g) for g in genes], columns=categories)
    return CellTypeProfile(means=means_df, cell_type_names=categories)


def get_de_genes(
    profile: CellTypeProfile,
    dataset: SpatialDataset,
    fc_thresh: float = 1.25,
    expr_thresh: float = 0.00015,
    min_obs: int = 3,
) -> List[str]:
    """Genes enriched in at least one cell type relative to the mean of the others.

    Mitochondrial (``mt-``) genes and genes seen fewer than ``min_obs`` times
    across the whole array are never selected.
    """
    bulk_vec = dataset.bulk()
    means = profile.means
    n_before = min(means.shape[0], bulk_vec.shape[0])
    shared = [g for g in means.index if g in bulk_vec.index and not g.startswith("mt-")]
    if not shared:
        raise ValueError("get_de_genes: 0 common genes between spatial data and reference.")
    genes = [g for g, n in zip(shared, bulk_vec.loc[shared]) if n >= min_obs]
    if len(genes) < 0.1 * n_before:
        raise ValueError("get_de_genes: at least 90% of genes do not match between spatial data and reference.")

    rates = means.loc[genes, profile.cell_type_names].to_numpy(dtype=float)
    others = (rates.sum(axis=1, keepdims=True) - rates) / max(rates.shape[1] - 1, 1)
    logfc = np.log(rates + 1e-9) - np.log(others + 1e-9)
    selected = ((logfc > fc_thresh) & (rates > expr_thresh)).any(axis=1)
    if selected.sum() < 10:
        raise ValueError("get_de_genes: fewer than 10 differentially expressed genes found.")
    return [g for g, keep in zip(genes, selected) if keep]


def fit_bulk(
    profile: CellTypeProfile,
    dataset: SpatialDataset,
    gene_list: Sequence[str],
    min_obs: int = MIN_OBS_BULK,
) -> np.ndarray:
    """Cell-type proportions of the whole array, treated as one pooled pixel."""
    bulk_vec = dataset.bulk().loc[list(gene_list)]
    bulk_genes = [g for g in gene_list if bulk_vec[g] >= min_obs]
    if not bulk_genes:
        raise ValueError("fit_bulk: no genes reach the minimum bulk count.")
    total_umi = float(dataset.n_umi.sum())
    bulk_x = profile.means.loc[bulk_genes, profile.cell_type_names].to_numpy() * total_umi
    res = decompose_full(
        bulk_x,
        total_umi,
        bulk_vec.loc[bulk_genes].to_numpy(dtype=float),
        None,
        constrain=False,
        bulk_mode=True,
        n_iter=DEFAULT_IRWLS_ITERS_BULK,
        min_change=DEFAULT_MIN_CHANGE_BULK,
    )
    return res["weights"]


def get_norm_ref(
    profile: CellTypeProfile,
    dataset: SpatialDataset,
    gene_list: Sequence[str],
    proportions: np.ndarray,
) -> CellTypeProfile:
    """Rescale each gene so the proportion-weighted reference matches the spatial bulk.

    This is the single per-gene platform-effect correction.
    """
    gene_list = list(gene_list)
    bulk_vec = dataset.bulk().loc[gene_list].to_numpy(dtype=float)
    means = profile.means.loc[gene_list, profile.cell_type_names].to_numpy()
    weight_avg = (means * (proportions / proportions.sum())).sum(axis=1)
    target_means = bulk_vec / float(dataset.n_umi.sum())
    with np.errstate(divide="ignore", invalid="ignore"):
        platform_effect = target_means / weight_avg
    platform_effect = np.where(np.isfinite(platform_effect), platform_effect, 0.0)
    renorm = pd.DataFrame(means * platform_effect[:, None], index=gene_list, columns=profile.cell_type_names)
    return profile.with_renorm(renorm)


def choose_sigma(
    dataset: SpatialDataset,
    gene_list: Sequence[str],
    profile: CellTypeProfile,
    qmat_all: Dict[str, np.ndarray],
    x_vals: np.ndarray,
    *,
    rng: Optional[np.random.RandomState] = None,
    fit_idx: Optional[List[str]] = None,
    n_fit: int = 1000,
    n_epoch: int = 8,
    umi_min_sigma: float = 300,
    sigma_init: int = 100,
) -> Tuple[float, List[str]]:
    """Pick the tabulated noise level that best explains full-mode fits.

    Alternates fitting a pixel sample at the current sigma with a local
    search over neighbouring tabulated sigmas, until sigma stops moving.
    """
    gene_list = list(gene_list)
    sigma_ind = [s for s in default_sigma_values() if str(s) in qmat_all]
    if not sigma_ind:
        raise ValueError("choose_sigma: no tabulated sigma values available.")
    sigma = sigma_init if sigma_init in sigma_ind else min(sigma_ind, key=lambda s: abs(s - sigma_init))
    mult_fac_vec = [i / 10 for i in range(8, 13)]

    fit_spots = dataset.n_umi[dataset.n_umi > umi_min_sigma]
    if fit_spots.shape[0] == 0:
        raise ValueError("choose_sigma: no pixels above umi_min_sigma.")
    if fit_idx is None:
        if rng is None:
            rng = np.random.RandomState()
        fit_idx = rng.choice(fit_spots.index, size=min(n_fit, fit_spots.shape[0]), replace=False).tolist()

    counts = dataset.subset(fit_idx).counts_for(gene_list).toarray()
    n_umi_fit = dataset.n_umi.loc[fit_idx].to_numpy(dtype=float)
    rates = profile.matrix(gene_list)
    caches = {}

    def _cache(sig: int):
        if sig not in caches:
            caches[sig] = set_likelihood_vars(qmat_all[str(sig)], x_vals, sigma=sig / 100.0)
        return caches[sig]

    for _ in range(n_epoch):
        cache = _cache(sigma)
        weights = np.vstack(
            [
                decompose_full(rates * n_umi_fit[i], float(n_umi_fit[i]), counts[:, i], cache, constrain=False)["weights"]
                for i in range(counts.shape[1])
            ]
        )
        prediction = (rates @ weights.T) * n_umi_fit
        pred_vec = np.maximum(prediction.ravel(order="F"), 1e-4)
        count_vec = counts.ravel(order="F")
        num_sample = min(1_000_000, pred_vec.shape[0])
        if num_sample < pred_vec.shape[0]:
            if rng is None:
                rng = np.random.RandomState()
            use_ind = rng.choice(pred_vec.shape[0], size=num_sample, replace=False)
            pred_vec = pred_vec[use_ind]
            count_vec = count_vec[use_ind]

        si = sigma_ind.index(sigma)
        sigma_window = sigma_ind[max(0, si - 8) : min(si + 9, len(sigma_ind))]
        score_vec = {
            s: min(calc_log_l_vec(pred_vec * mult, count_vec, _cache(s)) for mult in mult_fac_vec)
            for s in sigma_window
        }
        new_sigma = min(score_vec, key=score_vec.get)
        if new_sigma == sigma:
            break
        sigma = new_sigma
    return sigma / 100.0, fit_idx
