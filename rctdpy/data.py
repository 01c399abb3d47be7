"""Containers for spatial counts and reference cell-type profiles."""

from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
import scipy.sparse as sp


def _to_csc(counts) -> sp.csc_matrix:
    if isinstance(counts, pd.DataFrame):
        counts = counts.to_numpy()
    if sp.issparse(counts):
        return sp.csc_matrix(counts, dtype=float)
    return sp.csc_matrix(np.asarray(counts, dtype=float))


@dataclass(frozen=True)
class SpatialDataset:
    """Pixel counts (genes x pixels), coordinates and UMI totals.

    Build instances with :meth:`from_counts`, which checks the preconditions
    the fitting code relies on.
    """

    counts: sp.csc_matrix
    genes: pd.Index
    barcodes: pd.Index
    coords: pd.DataFrame
    n_umi: pd.Series
    cell_labels: Optional[pd.Series] = None
    cell_type_names: Optional[List[str]] = None

    @classmethod
    def from_counts(
        cls,
        counts,
        coords: pd.DataFrame,
        n_umi: Optional[pd.Series] = None,
        *,
        genes: Optional[Sequence[str]] = None,
        barcodes: Optional[Sequence[str]] = None,
        cell_labels: Optional[pd.Series] = None,
        cell_type_names: Optional[List[str]] = None,
        check_n_umi: bool = True,
    ) -> "SpatialDataset":
        """Validate and wrap counts.

        An explicit ``n_umi`` must equal the per-pixel column sums unless
        ``check_n_umi`` is False, as for derived datasets whose records carry
        apportioned totals.
        """
        if isinstance(counts, pd.DataFrame):
            genes = counts.index if genes is None else genes
            barcodes = counts.columns if barcodes is None else barcodes
        mat = _to_csc(counts)
        if genes is None or barcodes is None:
            raise ValueError("SpatialDataset: gene and barcode names are required for array counts.")
        genes = pd.Index([str(g) for g in genes])
        barcodes = pd.Index([str(b) for b in barcodes])
        if mat.shape != (len(genes), len(barcodes)):
            raise ValueError(
                f"SpatialDataset: counts shape {mat.shape} does not match "
                f"{len(genes)} genes x {len(barcodes)} barcodes."
            )
        if genes.has_duplicates or barcodes.has_duplicates:
            raise ValueError("SpatialDataset: gene and barcode names must be unique.")
        if mat.nnz and float(mat.data.min()) < 0:
            raise ValueError("SpatialDataset: counts must be non-negative.")

        coords = coords.copy()
        coords.index = coords.index.astype(str)
        missing = [c for c in ("x", "y") if c not in coords.columns]
        if missing:
            raise ValueError(f"SpatialDataset: coords missing columns {missing}.")
        if set(coords.index) != set(barcodes):
            raise ValueError("SpatialDataset: coords and counts have different pixel barcodes.")
        coords = coords.loc[barcodes, ["x", "y"]].astype(float)

        if n_umi is None:
            n_umi = pd.Series(np.asarray(mat.sum(axis=0)).ravel(), index=barcodes)
        else:
            if not isinstance(n_umi, pd.Series):
                n_umi = pd.Series(np.asarray(n_umi, dtype=float).ravel(), index=barcodes)
            n_umi = n_umi.astype(float)
            n_umi.index = n_umi.index.astype(str)
            if set(n_umi.index) != set(barcodes):
                raise ValueError("SpatialDataset: nUMI and counts have different pixel barcodes.")
            n_umi = n_umi.loc[barcodes]
            if (n_umi < 0).any():
                raise ValueError("SpatialDataset: nUMI must be non-negative.")
            if check_n_umi and not np.allclose(n_umi.to_numpy(), np.asarray(mat.sum(axis=0)).ravel()):
                raise ValueError("SpatialDataset: nUMI must equal the column sums of counts.")

        if cell_labels is not None:
            if not isinstance(cell_labels, pd.Series):
                cell_labels = pd.Series(list(cell_labels), index=barcodes)
            cell_labels = cell_labels.copy()
            cell_labels.index = cell_labels.index.astype(str)
            if set(cell_labels.index) != set(barcodes):
                raise ValueError("SpatialDataset: cell_labels and counts have different pixel barcodes.")
            cell_labels = cell_labels.loc[barcodes]

        return cls(
            counts=mat,
            genes=genes,
            barcodes=barcodes,
            coords=coords,
            n_umi=n_umi,
            cell_labels=cell_labels,
            cell_type_names=cell_type_names,
        )

    @property
    def n_pixels(self) -> int:
        return len(self.barcodes)

    def gene_indices(self, gene_list: Iterable[str]) -> np.ndarray:
        gene_list = list(gene_list)
        missing = [g for g in gene_list if g not in self.genes]
        if missing:
            raise ValueError(f"SpatialDataset: {len(missing)} fitting genes are missing, e.g. {missing[:5]}.")
        return self.genes.get_indexer(gene_list)

    def counts_for(self, gene_list: Iterable[str]) -> sp.csc_matrix:
        """Counts restricted (and ordered) to ``gene_list``."""
        return self.counts[self.gene_indices(gene_list), :].tocsc()

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.counts.toarray(), index=self.genes, columns=self.barcodes)

    def bulk(self) -> pd.Series:
        return pd.Series(np.asarray(self.counts.sum(axis=1)).ravel(), index=self.genes)

    def subset(self, barcodes: Iterable[str]) -> "SpatialDataset":
        barcodes = pd.Index([str(b) for b in barcodes])
        idx = self.barcodes.get_indexer(barcodes)
        if (idx < 0).any():
            raise ValueError("SpatialDataset: subset requested unknown barcodes.")
        labels = self.cell_labels.loc[barcodes] if self.cell_labels is not None else None
        return replace(
            self,
            counts=self.counts[:, idx].tocsc(),
            barcodes=barcodes,
            coords=self.coords.loc[barcodes],
            n_umi=self.n_umi.loc[barcodes],
            cell_labels=labels,
        )


@dataclass(frozen=True)
class CellTypeProfile:
    """Per-UMI expression rate of every gene for every cell type.

    ``renorm`` holds the platform-effect corrected rates when the bulk
    correction ran; :attr:`rates` prefers it.
    """

    means: pd.DataFrame
    renorm: Optional[pd.DataFrame] = None
    cell_type_names: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        names = self.cell_type_names or [str(c) for c in self.means.columns]
        object.__setattr__(self, "cell_type_names", list(names))
        if list(self.means.columns) != self.cell_type_names:
            raise ValueError("CellTypeProfile: column order must match cell_type_names.")
        if len(set(self.cell_type_names)) != len(self.cell_type_names):
            raise ValueError("CellTypeProfile: duplicate cell type names.")
        for table in (self.means, self.renorm):
            if table is None:
                continue
            if table.isna().to_numpy().any() or (table.to_numpy() < 0).any():
                raise ValueError("CellTypeProfile: rates must be finite and non-negative.")
        if self.renorm is not None and list(self.renorm.columns) != self.cell_type_names:
            raise ValueError("CellTypeProfile: renorm columns must match cell_type_names.")

    @property
    def n_cell_types(self) -> int:
        return len(self.cell_type_names)

    @property
    def rates(self) -> pd.DataFrame:
        return self.renorm if self.renorm is not None else self.means

    def matrix(self, gene_list: Iterable[str]) -> np.ndarray:
        """genes x types rate matrix for ``gene_list`` in the canonical type order."""
        gene_list = list(gene_list)
        rates = self.rates
        missing = [g for g in gene_list if g not in rates.index]
        if missing:
            raise ValueError(f"CellTypeProfile: {len(missing)} fitting genes are missing, e.g. {missing[:5]}.")
        return rates.loc[gene_list, self.cell_type_names].to_numpy(dtype=float)

    def with_renorm(self, renorm: pd.DataFrame) -> "CellTypeProfile":
        return replace(self, renorm=renorm[self.cell_type_names])


def restrict_dataset(dataset: SpatialDataset, umi_min: float = 100, umi_max: float = 20_000_000) -> SpatialDataset:
    """Keep pixels whose UMI total lies within ``[umi_min, umi_max]``."""
    keep = (dataset.n_umi >= umi_min) & (dataset.n_umi <= umi_max)
    return dataset.subset(dataset.barcodes[keep.to_numpy()])
