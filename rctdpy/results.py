"""Run-wide result tables and decomposition of doublet pixels into single cells."""

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .data import CellTypeProfile, SpatialDataset
from .doublet import SPOT_LEVELS, PixelFitResult, SpotClass

DOUBLET_COLUMNS = ["first_type", "second_type"]
EPSILON = 1e-10


@dataclass(frozen=True)
class ResultsTable:
    """Per-pixel classification plus the full-mode and doublet weight matrices."""

    results_df: pd.DataFrame
    weights: pd.DataFrame
    weights_doublet: pd.DataFrame

    @property
    def cell_type_names(self) -> List[str]:
        return list(self.weights.columns)

    def barcodes_of(self, spot_class: SpotClass) -> pd.Index:
        mask = (self.results_df["spot_class"] == SpotClass(spot_class).value).to_numpy()
        return self.results_df.index[mask]


def aggregate(
    results: Sequence[PixelFitResult],
    cell_type_names: Sequence[str],
    progress: Optional[Callable[[int, int], None]] = None,
) -> ResultsTable:
    """Collect per-pixel results into dense tables indexed by barcode."""
    cell_type_names = list(cell_type_names)
    n = len(results)
    barcodes = pd.Index([r.barcode for r in results])
    if barcodes.has_duplicates:
        raise ValueError("aggregate: duplicate pixel barcodes in results.")

    weights = np.zeros((n, len(cell_type_names)), dtype=float)
    weights_doublet = np.zeros((n, 2), dtype=float)
    spot_class = np.empty(n, dtype=object)
    first_type = np.empty(n, dtype=object)
    second_type = np.empty(n, dtype=object)
    first_class = np.zeros(n, dtype=bool)
    second_class = np.zeros(n, dtype=bool)
    min_score = np.zeros(n, dtype=float)
    singlet_score = np.zeros(n, dtype=float)
    conv_all = np.zeros(n, dtype=bool)
    conv_doublet = np.zeros(n, dtype=bool)

    for i, res in enumerate(results):
        if res.all_weights.size != len(cell_type_names):
            raise ValueError(
                f"aggregate: pixel {res.barcode} has {res.all_weights.size} weights, "
                f"expected {len(cell_type_names)}."
            )
        weights[i, :] = res.all_weights
        weights_doublet[i, :] = res.doublet_weights
        spot_class[i] = SpotClass(res.spot_class).value
        first_type[i] = res.first_type
        second_type[i] = res.second_type
        first_class[i] = res.first_class
        second_class[i] = res.second_class
        min_score[i] = res.min_score
        singlet_score[i] = res.singlet_score
        conv_all[i] = res.conv_all
        conv_doublet[i] = res.conv_doublet
        if progress is not None:
            progress(i + 1, n)

    results_df = pd.DataFrame(
        {
            "spot_class": pd.Categorical(spot_class, categories=SPOT_LEVELS),
            "first_type": pd.Categorical(first_type, categories=cell_type_names),
            "second_type": pd.Categorical(second_type, categories=cell_type_names),
            "first_class": first_class,
            "second_class": second_class,
            "min_score": min_score,
            "singlet_score": singlet_score,
            "conv_all": conv_all,
            "conv_doublet": conv_doublet,
        },
        index=barcodes,
    )
    return ResultsTable(
        results_df=results_df,
        weights=pd.DataFrame(weights, index=barcodes, columns=cell_type_names),
        weights_doublet=pd.DataFrame(weights_doublet, index=barcodes, columns=DOUBLET_COLUMNS),
    )


def decompose_doublet_fast(
    bead: np.ndarray,
    weights: np.ndarray,
    type1_rates: np.ndarray,
    type2_rates: np.ndarray,
) -> dict:
    """Split one pixel's counts between two types.

    Each gene's count goes to type 1 with probability proportional to
    ``w1 * r1`` against ``w2 * r2``. This assumes within-pixel expression
    ratios match the reference exactly; the split is an expectation and its
    variance is not estimated.
    """
    bead = np.asarray(bead, dtype=float)
    part_1 = weights[0] * type1_rates
    denom = part_1 + weights[1] * type2_rates + EPSILON
    posterior_1 = (part_1 + EPSILON / 2) / denom
    expect_1 = posterior_1 * bead
    return {"expect_1": expect_1, "expect_2": bead - expect_1}


def _derived_names(names: List[str], reserved: List[str]) -> List[str]:
    """Make doublet record names unique against each other and the singlet barcodes.

    A clashing name gets the first free ``.1``, ``.2``, ... suffix.
    """
    taken = set(reserved)
    out = []
    for name in names:
        candidate = name
        k = 0
        while candidate in taken:
            k += 1
            candidate = f"{name}.{k}"
        taken.add(candidate)
        out.append(candidate)
    return out


def decompose_doublets(
    results_table: ResultsTable,
    gene_list: Sequence[str],
    dataset: SpatialDataset,
    weights_doublet: pd.DataFrame,
    profiles: CellTypeProfile,
) -> SpatialDataset:
    """Build a single-cell dataset: two records per certain doublet, one per singlet.

    Rejected and uncertain-doublet pixels are left out. Doublet records carry
    their type's share of the pixel nUMI; singlet records keep counts and nUMI.
    Doublet records are named ``<barcode>_1`` and ``<barcode>_2``, with a
    numeric suffix added when that name is already taken.
    """
    gene_list = list(gene_list)
    results_df = results_table.results_df
    doublets = results_table.barcodes_of(SpotClass.DOUBLET_CERTAIN)
    singlets = results_table.barcodes_of(SpotClass.SINGLET)

    missing = doublets.difference(weights_doublet.index)
    if len(missing):
        raise KeyError(f"decompose_doublets: doublet_certain pixels missing from weights: {list(missing[:5])}")

    counts = dataset.counts_for(gene_list)
    rates = profiles.rates.loc[gene_list]
    doublet_idx = dataset.barcodes.get_indexer(doublets)
    singlet_idx = dataset.barcodes.get_indexer(singlets)
    if (doublet_idx < 0).any() or (singlet_idx < 0).any():
        raise KeyError("decompose_doublets: classified pixels are missing from the dataset.")

    n_doublets = len(doublets)
    first_dge = np.zeros((len(gene_list), n_doublets), dtype=float)
    second_dge = np.zeros((len(gene_list), n_doublets), dtype=float)
    pair_weights = weights_doublet.loc[doublets, DOUBLET_COLUMNS].to_numpy(dtype=float)
    first_types = results_df.loc[doublets, "first_type"].astype(str).to_numpy()
    second_types = results_df.loc[doublets, "second_type"].astype(str).to_numpy()
    for k in range(n_doublets):
        doub_res = decompose_doublet_fast(
            counts[:, doublet_idx[k]].toarray().ravel(),
            pair_weights[k],
            rates[first_types[k]].to_numpy(dtype=float),
            rates[second_types[k]].to_numpy(dtype=float),
        )
        first_dge[:, k] = doub_res["expect_1"]
        second_dge[:, k] = doub_res["expect_2"]

    all_dge = sp.hstack(
        [sp.csc_matrix(first_dge), sp.csc_matrix(second_dge), counts[:, singlet_idx]],
        format="csc",
    )
    new_barcodes = _derived_names(
        [f"{b}_1" for b in doublets] + [f"{b}_2" for b in doublets], list(singlets)
    ) + list(singlets)
    coords = pd.concat(
        [dataset.coords.loc[doublets], dataset.coords.loc[doublets], dataset.coords.loc[singlets]]
    )
    coords.index = new_barcodes
    pixel_umi = dataset.n_umi.loc[doublets].to_numpy(dtype=float)
    n_umi = np.concatenate(
        [pair_weights[:, 0] * pixel_umi, pair_weights[:, 1] * pixel_umi, dataset.n_umi.loc[singlets].to_numpy(dtype=float)]
    )
    cell_labels = np.concatenate(
        [first_types, second_types, results_df.loc[singlets, "first_type"].astype(str).to_numpy()]
    )
    return SpatialDataset.from_counts(
        all_dge,
        coords,
        pd.Series(n_umi, index=new_barcodes),
        genes=gene_list,
        barcodes=new_barcodes,
        cell_labels=pd.Series(cell_labels, index=new_barcodes),
        cell_type_names=results_table.cell_type_names,
        check_n_umi=False,
    )
