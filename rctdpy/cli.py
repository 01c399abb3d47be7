import argparse
import os
from pathlib import Path
from typing import List, Optional

import anndata as ad
import numpy as np
import pandas as pd

from .config import RCTDConfig
from .data import CellTypeProfile, SpatialDataset, restrict_dataset
from .doublet import fit_pixels
from .likelihood import (
    DEFAULT_GH_N,
    DEFAULT_K_MAX,
    DEFAULT_X_MAX,
    build_qmat_all,
    cache_from_tables,
    default_sigma_values,
    load_qmat_npz,
    save_qmat_npz,
)
from .reference import choose_sigma, fit_bulk, get_cell_type_info, get_de_genes, get_norm_ref
from .results import aggregate, decompose_doublets

COUNTS_MIN = 10
PROGRESS_EVERY = 1000


def _read_lines(path: str) -> List[str]:
    with open(path) as f:
        return [line.strip() for line in f if line.strip()]


def _parse_sigma_list(raw: Optional[str], grid: str) -> List[int]:
    if raw:
        vals = [int(x.strip()) for x in raw.split(",") if x.strip()]
        if not vals:
            raise ValueError("Empty --sigma-list.")
        return sorted(set(vals))
    if grid == "rctd":
        return default_sigma_values()
    if grid == "full":
        return list(range(10, 201))
    raise ValueError(f"Unknown sigma grid: {grid}")


def _print_progress(label: str):
    def report(done: int, total: int) -> None:
        if done % PROGRESS_EVERY == 0 or done == total:
            print(f"{label}: finished {done} / {total}")

    return report


def load_spatial(cnts_csv: str, locs_csv: str) -> SpatialDataset:
    """Counts CSV (pixels x genes) and coordinates CSV (pixels x [x, y])."""
    cnts = pd.read_csv(cnts_csv, index_col=0)
    locs = pd.read_csv(locs_csv, index_col=0)
    if not {"x", "y"}.issubset(locs.columns):
        locs = locs.iloc[:, :2]
        locs.columns = ["x", "y"]
    cnts.index = cnts.index.astype(str)
    locs.index = locs.index.astype(str)
    if set(locs.index) != set(cnts.index):
        raise ValueError("Spatial coords and counts do not align.")
    return SpatialDataset.from_counts(cnts.T, locs)


def load_reference(args: argparse.Namespace) -> CellTypeProfile:
    if args.cell_type_means_csv:
        means = pd.read_csv(args.cell_type_means_csv, index_col=0)
        means.index = means.index.astype(str)
        return CellTypeProfile(means=means[sorted(means.columns)])
    if not args.reference_h5ad:
        raise ValueError("Either --reference-h5ad or --cell-type-means-csv is required.")
    adata = ad.read_h5ad(args.reference_h5ad)
    counts = adata.layers["counts"] if "counts" in adata.layers else adata.X
    obs = adata.obs
    if args.cell_type_col not in obs.columns:
        raise ValueError(f"Missing cell type column: {args.cell_type_col}")
    n_umi = obs["nUMI"] if "nUMI" in obs.columns else None
    rng = np.random.RandomState(args.seed)
    return get_cell_type_info(
        counts.T,
        adata.var_names.to_list(),
        obs[args.cell_type_col],
        n_umi,
        ref_n_cells_max=args.ref_n_cells_max,
        rng=rng,
    )


def run(args: argparse.Namespace) -> None:
    os.makedirs(args.outdir, exist_ok=True)
    rng = np.random.RandomState(args.seed)
    config = RCTDConfig(
        umi_min=args.umi_min,
        umi_max=args.umi_max,
        doublet_threshold=args.doublet_threshold,
        confidence_threshold=args.confidence_threshold,
        doublet_weight_threshold=args.doublet_weight_threshold,
        initial_weight_thresh=args.initial_weight_thresh,
        constrain=args.constrain,
        solver=args.solver,
    )

    print("Loading single-cell reference...")
    profile = load_reference(args)
    print("Loading spatial transcriptomics data...")
    puck = load_spatial(args.cnts_csv, args.locs_csv)

    print("Filtering spatial spots...")
    puck = restrict_dataset(puck, umi_min=max(config.umi_min, COUNTS_MIN), umi_max=config.umi_max)
    if puck.n_pixels == 0:
        raise ValueError("No pixels pass the UMI bounds.")

    print("Selecting DE genes...")
    if args.gene_list_reg:
        gene_list_reg = _read_lines(args.gene_list_reg)
    else:
        gene_list_reg = get_de_genes(profile, puck, fc_thresh=0.75, expr_thresh=0.0002, min_obs=3)
    gene_list_bulk = []
    if args.skip_normalize:
        print("Skipping platform-effect normalization.")
    else:
        print("Normalizing reference...")
        if args.gene_list_bulk:
            gene_list_bulk = _read_lines(args.gene_list_bulk)
        else:
            gene_list_bulk = get_de_genes(profile, puck, fc_thresh=0.5, expr_thresh=0.000125, min_obs=3)
        proportions = fit_bulk(profile, puck, gene_list_bulk)
        profile = get_norm_ref(profile, puck, gene_list_bulk, proportions)

    if args.qmat:
        qmat_all, x_vals = load_qmat_npz(args.qmat, qmat_mode=args.qmat_mode)
    else:
        print("Building likelihood tables...")
        sigma_vals = [int(round(args.sigma * 100))] if args.sigma is not None else default_sigma_values()
        qmat_all, x_vals = build_qmat_all(sigma_vals, k_max=args.k_max, x_max=args.x_max)

    if args.sigma is not None:
        sigma = args.sigma
    else:
        print("Choosing sigma...")
        sigma, _ = choose_sigma(puck, gene_list_reg, profile, qmat_all, x_vals, rng=rng, umi_min_sigma=args.umi_min_sigma)
    print(f"sigma = {sigma}")
    cache = cache_from_tables(qmat_all, x_vals, sigma)

    print(f"Fitting {puck.n_pixels} pixels in {args.mode} mode...")
    results = fit_pixels(
        puck,
        profile,
        cache,
        gene_list_reg,
        mode=args.mode,
        config=config,
        n_jobs=args.num_cores,
        progress=_print_progress("fit_pixels"),
    )
    table = aggregate(results, profile.cell_type_names, progress=_print_progress("gather_results"))

    table.results_df.to_csv(os.path.join(args.outdir, "results.csv"))
    table.weights.to_csv(os.path.join(args.outdir, "weights.csv"))
    table.weights_doublet.to_csv(os.path.join(args.outdir, "weights_doublet.csv"))
    puck.coords.to_csv(os.path.join(args.outdir, "locs.csv"))

    if args.decompose:
        print("Decomposing doublets...")
        decomposed = decompose_doublets(table, gene_list_reg, puck, table.weights_doublet, profile)
        decomposed.to_frame().T.to_csv(os.path.join(args.outdir, "decomposed_counts.csv"))
        meta = decomposed.coords.copy()
        meta["nUMI"] = decomposed.n_umi
        meta["cell_type"] = decomposed.cell_labels
        meta.to_csv(os.path.join(args.outdir, "decomposed_meta.csv"))

    if args.dump_intermediate:
        dump_dir = os.path.join(args.outdir, "intermediate")
        os.makedirs(dump_dir, exist_ok=True)
        Path(dump_dir, "gene_list_reg.txt").write_text("\n".join(gene_list_reg) + "\n")
        Path(dump_dir, "gene_list_bulk.txt").write_text("\n".join(gene_list_bulk) + "\n")
        Path(dump_dir, "sigma.txt").write_text(f"{sigma}\n")
        profile.means.to_csv(os.path.join(dump_dir, "ct_means_raw.csv"))
        profile.rates.to_csv(os.path.join(dump_dir, "ct_means_renorm.csv"))

    counts = table.results_df["spot_class"].value_counts()
    print("Spot classes:", ", ".join(f"{k}={v}" for k, v in counts.items()))
    print("Done. Results saved to:", args.outdir)


def generate_qmat(args: argparse.Namespace) -> None:
    sigma_vals = _parse_sigma_list(args.sigma_list, args.sigma_grid)
    print(f"k_max={args.k_max} (rows={args.k_max + 3}), x_max={args.x_max}")
    print(f"sigma values: {sigma_vals[0]}..{sigma_vals[-1]} (count={len(sigma_vals)})")
    print(f"output: {args.out}")
    out_dir = os.path.dirname(args.out)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    qmat_all, x_vals = build_qmat_all(
        sigma_vals, k_max=args.k_max, x_max=args.x_max, method=args.method, gh_n=args.gh_n
    )
    save_qmat_npz(args.out, qmat_all, x_vals)
    print("Done.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rctdpy", description="Cell-type decomposition of spatial transcriptomics pixels.")
    sub = parser.add_subparsers(dest="command", required=True)

    p_q = sub.add_parser("generate-qmat", help="Precompute likelihood tables into an npz file.")
    p_q.add_argument("--out", default="qmat.npz")
    p_q.add_argument("--k-max", type=int, default=DEFAULT_K_MAX, help="Max count (k). Tables have k_max+3 rows.")
    p_q.add_argument("--x-max", type=float, default=DEFAULT_X_MAX, help="Max expected count on the x grid.")
    p_q.add_argument("--sigma-list", default=None, help="Comma-separated sigma integers (e.g., 10,12,14).")
    p_q.add_argument("--sigma-grid", choices=["rctd", "full"], default="rctd")
    p_q.add_argument("--method", choices=["gh", "heavy_tail"], default="gh")
    p_q.add_argument("--gh-n", type=int, default=DEFAULT_GH_N, help="Gauss-Hermite nodes.")
    p_q.set_defaults(func=generate_qmat)

    p_r = sub.add_parser("run", help="Fit pixels, classify them and write result tables.")
    p_r.add_argument("cnts_csv")
    p_r.add_argument("locs_csv")
    p_r.add_argument("outdir")
    p_r.add_argument("--reference-h5ad", default=None)
    p_r.add_argument("--cell-type-means-csv", default=None, help="genes x cell types mean expression.")
    p_r.add_argument("--cell-type-col", default="celltype")
    p_r.add_argument("--ref-n-cells-max", type=int, default=10000)
    p_r.add_argument("--num-cores", type=int, default=1)
    p_r.add_argument("--mode", choices=["doublet", "full"], default="doublet")
    p_r.add_argument("--seed", type=int, default=0)
    p_r.add_argument("--sigma", type=float, default=None)
    p_r.add_argument("--qmat", default=None, help="npz of precomputed tables; built on the fly otherwise.")
    p_r.add_argument(
        "--qmat-mode",
        default="auto",
        choices=["neglog", "log", "prob", "raw", "auto"],
        help="Encoding of --qmat tables: log p, -log p, p, as-is, or guessed.",
    )
    p_r.add_argument("--k-max", type=int, default=DEFAULT_K_MAX)
    p_r.add_argument("--x-max", type=float, default=DEFAULT_X_MAX)
    p_r.add_argument("--gene-list-reg", default=None)
    p_r.add_argument("--gene-list-bulk", default=None)
    p_r.add_argument("--skip-normalize", action="store_true")
    p_r.add_argument("--umi-min", type=float, default=RCTDConfig.umi_min)
    p_r.add_argument("--umi-max", type=float, default=RCTDConfig.umi_max)
    p_r.add_argument("--umi-min-sigma", type=float, default=RCTDConfig.umi_min_sigma)
    p_r.add_argument("--doublet-threshold", type=float, default=RCTDConfig.doublet_threshold)
    p_r.add_argument("--confidence-threshold", type=float, default=RCTDConfig.confidence_threshold)
    p_r.add_argument("--doublet-weight-threshold", type=float, default=RCTDConfig.doublet_weight_threshold)
    p_r.add_argument(
        "--initial-weight-thresh",
        type=float,
        default=RCTDConfig.initial_weight_thresh,
        help="Minimum weight from the full fit to keep a cell type as a pair candidate.",
    )
    p_r.add_argument("--constrain", action="store_true")
    p_r.add_argument("--solver", default=RCTDConfig.solver)
    p_r.add_argument("--decompose", action="store_true", help="Also write the decomposed single-cell dataset.")
    p_r.add_argument("--dump-intermediate", action="store_true")
    p_r.set_defaults(func=run)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
