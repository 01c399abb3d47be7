"""
End-to-end tests for the rctdpy command line.
"""
import numpy as np
import pandas as pd
import pytest

from rctdpy.cli import build_parser, main
from rctdpy.likelihood import load_qmat_npz


@pytest.fixture
def qmat_path(tmp_path):
    path = tmp_path / "tables" / "qmat.npz"
    main(["generate-qmat", "--out", str(path), "--sigma-list", "30", "--k-max", "100", "--x-max", "150"])
    return path


@pytest.fixture
def inputs(tmp_path, mixed_dataset, profile):
    cnts = tmp_path / "cnts.csv"
    locs = tmp_path / "locs.csv"
    means = tmp_path / "means.csv"
    genes = tmp_path / "genes.txt"
    mixed_dataset.to_frame().T.to_csv(cnts)
    mixed_dataset.coords.to_csv(locs)
    profile.means[["C", "A", "B"]].to_csv(means)
    genes.write_text("\n".join(profile.means.index) + "\n")
    return {"cnts": str(cnts), "locs": str(locs), "means": str(means), "genes": str(genes)}


def test_generate_qmat(qmat_path):
    qmat_all, x_vals = load_qmat_npz(str(qmat_path))
    assert list(qmat_all) == ["30"]
    assert qmat_all["30"].shape == (103, x_vals.size)
    assert np.all(qmat_all["30"] <= 1e-9)


def test_run_doublet_mode(tmp_path, qmat_path, inputs):
    outdir = tmp_path / "out"
    main(
        [
            "run",
            inputs["cnts"],
            inputs["locs"],
            str(outdir),
            "--cell-type-means-csv",
            inputs["means"],
            "--gene-list-reg",
            inputs["genes"],
            "--sigma",
            "0.3",
            "--qmat",
            str(qmat_path),
            "--skip-normalize",
            "--decompose",
            "--dump-intermediate",
        ]
    )
    results = pd.read_csv(outdir / "results.csv", index_col=0)
    # low_umi falls below the UMI floor and is filtered before fitting
    assert sorted(results.index) == ["ab_doublet", "bc_doublet", "pure_a", "pure_c"]
    assert results.loc["ab_doublet", "spot_class"] == "doublet_certain"
    assert results.loc["pure_a", "first_type"] == "A"

    weights = pd.read_csv(outdir / "weights.csv", index_col=0)
    assert list(weights.columns) == ["A", "B", "C"]
    doublet_weights = pd.read_csv(outdir / "weights_doublet.csv", index_col=0)
    assert list(doublet_weights.columns) == ["first_type", "second_type"]

    decomposed = pd.read_csv(outdir / "decomposed_counts.csv", index_col=0)
    meta = pd.read_csv(outdir / "decomposed_meta.csv", index_col=0)
    assert decomposed.shape == (6, 30)
    assert list(meta.index) == list(decomposed.index)
    assert meta.loc["ab_doublet_1", "cell_type"] == "B"

    assert (outdir / "intermediate" / "sigma.txt").read_text().strip() == "0.3"
    assert (outdir / "locs.csv").exists()


def test_run_full_mode_selects_genes(tmp_path, qmat_path, inputs):
    outdir = tmp_path / "full"
    main(
        [
            "run",
            inputs["cnts"],
            inputs["locs"],
            str(outdir),
            "--cell-type-means-csv",
            inputs["means"],
            "--sigma",
            "0.3",
            "--qmat",
            str(qmat_path),
            "--mode",
            "full",
        ]
    )
    results = pd.read_csv(outdir / "results.csv", index_col=0)
    assert set(results["spot_class"]) <= {"singlet", "reject"}
    assert results.loc["pure_c", "first_type"] == "C"


def test_missing_sigma_table(tmp_path, qmat_path, inputs):
    with pytest.raises(ValueError, match="not available"):
        main(
            [
                "run",
                inputs["cnts"],
                inputs["locs"],
                str(tmp_path / "bad"),
                "--cell-type-means-csv",
                inputs["means"],
                "--sigma",
                "0.5",
                "--qmat",
                str(qmat_path),
                "--skip-normalize",
            ]
        )


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
