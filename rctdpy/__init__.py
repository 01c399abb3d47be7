from .config import RCTDConfig
from .data import CellTypeProfile, SpatialDataset, restrict_dataset
from .doublet import PixelFitResult, SpotClass, classify_spot, fit_pixel, fit_pixels
from .likelihood import LikelihoodCache, build_likelihood_cache, load_qmat_npz, set_likelihood_vars
from .reference import choose_sigma, fit_bulk, get_cell_type_info, get_de_genes, get_norm_ref
from .results import ResultsTable, aggregate, decompose_doublets

__all__ = [
    "RCTDConfig",
    "CellTypeProfile",
    "SpatialDataset",
    "restrict_dataset",
    "PixelFitResult",
    "SpotClass",
    "classify_spot",
    "fit_pixel",
    "fit_pixels",
    "LikelihoodCache",
    "build_likelihood_cache",
    "load_qmat_npz",
    "set_likelihood_vars",
    "choose_sigma",
    "fit_bulk",
    "get_cell_type_info",
    "get_de_genes",
    "get_norm_ref",
    "ResultsTable",
    "aggregate",
    "decompose_doublets",
]
