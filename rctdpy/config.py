"""Thresholds and optimizer budgets for pixel fitting."""

from dataclasses import dataclass

from .core import DEFAULT_IRWLS_ITERS, DEFAULT_IRWLS_ITERS_SCORE, DEFAULT_MIN_CHANGE, SOLVERS

UMI_MIN = 100
UMI_MAX = 20_000_000
UMI_MIN_SIGMA = 300
DEFAULT_CONF_THRESH = 10.0
DEFAULT_DOUBLET_THRESH = 25.0
DEFAULT_DOUBLET_WEIGHT_THRESH = 0.25
DEFAULT_INITIAL_WEIGHT_THRESH = 0.01


@dataclass(frozen=True)
class RCTDConfig:
    """Every tunable of the per-pixel engine.

    Scores are negative log-likelihoods, so the likelihood margins below are
    in nats.
    """

    umi_min: float = UMI_MIN
    umi_max: float = UMI_MAX
    umi_min_sigma: float = UMI_MIN_SIGMA
    # best pair must beat the best single type by this much to call a doublet
    doublet_threshold: float = DEFAULT_DOUBLET_THRESH
    # pairs scoring within this of the best pair count as alternatives
    confidence_threshold: float = DEFAULT_CONF_THRESH
    doublet_weight_threshold: float = DEFAULT_DOUBLET_WEIGHT_THRESH
    initial_weight_thresh: float = DEFAULT_INITIAL_WEIGHT_THRESH
    min_change: float = DEFAULT_MIN_CHANGE
    n_iter: int = DEFAULT_IRWLS_ITERS
    n_iter_score: int = DEFAULT_IRWLS_ITERS_SCORE
    constrain: bool = False
    solver: str = "quadprog"

    def __post_init__(self) -> None:
        if self.umi_min < 0:
            raise ValueError(f"umi_min must be >= 0, got {self.umi_min}")
        if self.umi_max <= self.umi_min:
            raise ValueError("umi_max must be > umi_min")
        for name in ("doublet_threshold", "confidence_threshold", "initial_weight_thresh"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        if not 0.0 <= self.doublet_weight_threshold <= 0.5:
            raise ValueError(
                f"doublet_weight_threshold must be within [0, 0.5], got {self.doublet_weight_threshold}"
            )
        if self.min_change <= 0:
            raise ValueError(f"min_change must be > 0, got {self.min_change}")
        for name in ("n_iter", "n_iter_score"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.solver not in SOLVERS:
            raise ValueError(f"solver must be one of {SOLVERS}, got {self.solver!r}")

    def umi_in_range(self, n_umi: float) -> bool:
        return self.umi_min <= n_umi <= self.umi_max
