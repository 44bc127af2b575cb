"""Regulon activity scoring using AUCell.

AUCell (Area Under the Curve) scores quantify how active each regulon is in
each individual cell. Genes are ranked by expression in every cell (see
ranking.py); for a regulon with members at ranks r_1..r_m and a rank cutoff
k, the recovery curve f(r) counts members with rank ≤ r. The raw AUC is the
area under f over r = 1..k:

    AUC_raw = Σ_{r=1..k} f(r) = Σ_{r_i ≤ k} (k − r_i + 1)

and is divided by its maximum, reached when the top min(m, k) ranks are all
regulon members:

    AUC_max = m'·k − m'(m' − 1)/2,   m' = min(m, k)

Scores therefore lie in [0, 1] and are comparable across regulons of
different sizes. Each (regulon, cell) score depends only on that cell's
ranking, so regulons are scored in parallel with each worker filling its own
rows of a preallocated matrix.

Pipeline:
  1. Load expression and the regulon catalog; reject regulons with fewer
     than min_genes members.
  2. Build per-cell rankings (seeded random tie-breaks).
  3. Choose the rank cutoff from the distribution of genes detected per cell.
  4. Score every regulon in every cell.
  5. Select an activity threshold per regulon and binarize (binarization.py).
  6. Group regulons by correlated activity (regulon_clustering.py).
  7. Optionally z-score regulon activity per cell type.

Usage:
    python -m regulon_aucell.aucell_scoring --config configs/default_config.yaml \\
        --expression-file data/CTRL.h5ad --regulon-file results/CTRL_GRN.csv \\
        --output-dir results/aucell/
"""

import argparse
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from .binarization import select_thresholds
from .exceptions import AUCellError, EmptyGeneSet, InvalidCutoff
from .expression import ExpressionMatrix
from .ranking import RankingSet, build_rankings
from .regulon_clustering import cluster_regulons
from .regulons import GeneSet, filter_gene_sets
from .utils.io import load_config, load_expression, load_h5ad, load_regulons, save_aucell, save_gmt
from .utils.stats import compute_zscore_matrix

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
log = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class ScoreMatrix:
    """AUCell scores of shape (n_regulons × n_cells).

    Regulons with no genes in the expression matrix are absent from values
    and reported in errors instead.
    """

    values: np.ndarray
    set_names: tuple
    cell_ids: tuple
    rank_cutoff: int
    set_sizes: dict = field(default_factory=dict)
    errors: dict = field(default_factory=dict)

    @property
    def n_sets(self) -> int:
        return self.values.shape[0]

    def row(self, name: str) -> np.ndarray:
        return self.values[self.set_names.index(name)]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.values, index=list(self.set_names), columns=list(self.cell_ids))

    @classmethod
    def from_frame(cls, df: pd.DataFrame, rank_cutoff: int = 0) -> "ScoreMatrix":
        """Wrap an existing regulons × cells DataFrame (e.g. a reloaded aucell.csv)."""
        values = df.to_numpy(dtype=np.float64, copy=True)
        values.flags.writeable = False
        return cls(values, tuple(str(n) for n in df.index), tuple(str(c) for c in df.columns), rank_cutoff)


# ── Rank cutoff ───────────────────────────────────────────────────────────────

def select_rank_cutoff(
    expression: ExpressionMatrix,
    percentile: float = 1.0,
    auc_threshold: Optional[float] = None,
) -> int:
    """Choose the rank cutoff k for AUC computation.

    By default k is a low percentile of the number of genes detected per
    cell, so that in nearly every cell the top-k ranks are genuinely
    expressed genes rather than the shuffled block of zeros. Alternatively
    k can be a fixed fraction of all genes (pySCENIC's auc_threshold).

    Args:
        expression: Genes × cells expression matrix.
        percentile: Percentile (0–100) of genes detected per cell.
        auc_threshold: If given, k = ceil(auc_threshold · n_genes) instead.

    Returns:
        Rank cutoff in [1, n_genes].
    """
    if auc_threshold is not None:
        k = math.ceil(auc_threshold * expression.n_genes)
        log.info("Rank cutoff %d (%.1f%% of %d genes)", k, 100 * auc_threshold, expression.n_genes)
    else:
        detected = expression.genes_detected_per_cell()
        k = int(np.floor(np.percentile(detected, percentile)))
        log.info(
            "Rank cutoff %d (%.1fth percentile of genes detected per cell; median %d)",
            k, percentile, int(np.median(detected)),
        )
    return int(min(max(k, 1), expression.n_genes))


def check_rank_cutoff(rank_cutoff: int, n_genes: int) -> int:
    """Return rank_cutoff as an int, raising InvalidCutoff if out of range."""
    if isinstance(rank_cutoff, bool) or int(rank_cutoff) != rank_cutoff:
        raise InvalidCutoff(rank_cutoff, n_genes)
    if rank_cutoff <= 0 or rank_cutoff > n_genes:
        raise InvalidCutoff(rank_cutoff, n_genes)
    return int(rank_cutoff)


# ── AUC ───────────────────────────────────────────────────────────────────────

def max_auc(n_members: int, rank_cutoff: int) -> int:
    """Raw AUC when the top min(n_members, rank_cutoff) ranks are all members."""
    m = min(n_members, rank_cutoff)
    return m * rank_cutoff - m * (m - 1) // 2


def auc_from_ranks(member_ranks: np.ndarray, rank_cutoff: int) -> np.ndarray:
    """Normalized AUC from the ranks of a regulon's members.

    Args:
        member_ranks: 1-based ranks of the members, shape (n_members,) for one
            cell or (n_members × n_cells).
        rank_cutoff: Number of top ranks considered.

    Returns:
        Score(s) in [0, 1]; a scalar array for 1-D input.
    """
    member_ranks = np.asarray(member_ranks, dtype=np.int64)
    raw = np.clip(rank_cutoff + 1 - member_ranks, 0, None).sum(axis=0)
    return raw / max_auc(member_ranks.shape[0], rank_cutoff)


def member_indices(gene_set: GeneSet, gene_index: dict[str, int]) -> np.ndarray:
    """Row positions of a regulon's genes in the ranking, sorted.

    Raises:
        EmptyGeneSet: If none of the regulon's genes are in the matrix.
    """
    idx = sorted(gene_index[g] for g in gene_set.genes if g in gene_index)
    if not idx:
        raise EmptyGeneSet(gene_set.name)
    return np.asarray(idx, dtype=np.intp)


def aucell_score(
    rankings: RankingSet,
    gene_set: GeneSet,
    rank_cutoff: int,
    gene_index: Optional[dict[str, int]] = None,
) -> np.ndarray:
    """Score one regulon in every cell.

    Regulon genes missing from the ranking are ignored.

    Args:
        rankings: Per-cell gene rankings.
        gene_set: Regulon to score.
        rank_cutoff: Number of top ranks considered.
        gene_index: Optional precomputed gene ID → row map.

    Returns:
        Array of n_cells scores in [0, 1].

    Raises:
        EmptyGeneSet: If none of the regulon's genes are in the ranking.
        InvalidCutoff: If rank_cutoff is not in [1, n_genes].
    """
    rank_cutoff = check_rank_cutoff(rank_cutoff, rankings.n_genes)
    if gene_index is None:
        gene_index = {g: i for i, g in enumerate(rankings.gene_ids)}
    idx = member_indices(gene_set, gene_index)
    return auc_from_ranks(rankings.ranks[idx, :], rank_cutoff)


def score_gene_sets(
    rankings: RankingSet,
    gene_sets: Iterable[GeneSet],
    rank_cutoff: int,
    n_workers: int = 1,
) -> ScoreMatrix:
    """Compute AUCell scores for every regulon in every cell.

    A regulon with no genes in the matrix is dropped from the output and its
    EmptyGeneSet error recorded in ScoreMatrix.errors; the remaining regulons
    are still scored.

    Args:
        rankings: Per-cell gene rankings from build_rankings().
        gene_sets: Regulon catalog. Names must be unique.
        rank_cutoff: Number of top ranks considered (1 ≤ k ≤ n_genes).
        n_workers: Number of worker threads. Does not affect the result.

    Returns:
        ScoreMatrix of shape (n_scored_regulons × n_cells), rows in catalog order.

    Raises:
        InvalidCutoff: If rank_cutoff is out of range.
        AUCellError: If regulon names are not unique.
    """
    rank_cutoff = check_rank_cutoff(rank_cutoff, rankings.n_genes)
    gene_sets = list(gene_sets)
    names = [gs.name for gs in gene_sets]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise AUCellError(f"Duplicate gene set names: {dupes[:5]}")

    gene_index = {g: i for i, g in enumerate(rankings.gene_ids)}
    resolved: list[tuple[str, np.ndarray]] = []
    errors: dict[str, EmptyGeneSet] = {}
    for gs in gene_sets:
        try:
            idx = member_indices(gs, gene_index)
        except EmptyGeneSet as err:
            log.warning("Dropping %s: %s", gs.name, err)
            errors[gs.name] = err
            continue
        if len(idx) < len(gs):
            log.warning(
                "%s: %d of %d genes found in the expression matrix (%.0f%%)",
                gs.name, len(idx), len(gs), 100 * len(idx) / len(gs),
            )
        resolved.append((gs.name, idx))

    values = np.empty((len(resolved), rankings.n_cells), dtype=np.float64)

    def score_row(i: int) -> None:
        values[i] = auc_from_ranks(rankings.ranks[resolved[i][1], :], rank_cutoff)

    if n_workers > 1 and len(resolved) > 1:
        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            for future in [executor.submit(score_row, i) for i in range(len(resolved))]:
                future.result()
    else:
        for i in range(len(resolved)):
            score_row(i)

    values.flags.writeable = False
    log.info(
        "Scored %d regulons × %d cells (rank cutoff %d); %d dropped",
        len(resolved), rankings.n_cells, rank_cutoff, len(errors),
    )
    return ScoreMatrix(
        values=values,
        set_names=tuple(name for name, _ in resolved),
        cell_ids=rankings.cell_ids,
        rank_cutoff=rank_cutoff,
        set_sizes={name: len(idx) for name, idx in resolved},
        errors=errors,
    )


# ── Full pipeline ─────────────────────────────────────────────────────────────

def run_aucell_pipeline(
    expression_path: str | Path,
    regulon_path: str | Path,
    output_dir: str | Path,
    seed: int = 42,
    rank_cutoff: Optional[int] = None,
    rank_cutoff_percentile: float = 1.0,
    auc_threshold: Optional[float] = None,
    min_genes: int = 10,
    include_tf: bool = False,
    min_population_fraction: float = 0.01,
    fallback_quantile: float = 0.99,
    max_components: int = 3,
    max_iter: int = 200,
    tol: float = 1e-4,
    linkage_method: str = "average",
    max_clusters: int = 20,
    n_workers: int = 1,
    h5ad_path: Optional[str | Path] = None,
    celltype_col: str = "subclass",
) -> dict:
    """Run ranking, AUCell scoring, binarization and regulon clustering.

    Args:
        expression_path: Expression file (.h5ad, .loom or genes × cells .csv).
        regulon_path: Regulon catalog (.gmt, or TF–target adjacency .csv).
        output_dir: Directory for all outputs.
        seed: Seed for ranking tie-breaks and mixture-model initialization.
        rank_cutoff: Explicit rank cutoff; overrides the percentile policy.
        rank_cutoff_percentile: Percentile of genes detected per cell used
            as the rank cutoff.
        auc_threshold: Fraction of genes used as the rank cutoff instead of
            the percentile policy.
        min_genes: Minimum regulon size.
        include_tf: Add each TF to its own regulon (adjacency input only).
        min_population_fraction: Smallest fraction of cells accepted as an
            active population when fitting thresholds.
        fallback_quantile: Quantile used when no mixture split is accepted.
        max_components: Largest mixture fitted per regulon.
        max_iter: EM iteration cap per mixture fit.
        tol: EM convergence tolerance.
        linkage_method: Linkage for regulon clustering.
        max_clusters: Largest number of regulon clusters considered.
        n_workers: Worker threads for ranking, scoring and thresholding.
        h5ad_path: Optional h5ad with cell metadata for per-cell-type z-scores.
        celltype_col: Cell type column in the h5ad obs.

    Returns:
        Dict with keys: 'scores' (ScoreMatrix), 'thresholds' (ThresholdSet),
        'clustering' (RegulonClustering), 'aucell' (cells × regulons
        DataFrame), and optionally 'zscore' (DataFrame).
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    expression = load_expression(expression_path)
    regulons = filter_gene_sets(load_regulons(regulon_path, include_tf=include_tf), min_genes=min_genes)
    save_gmt(regulons, output_dir / "regulons.gmt")

    if rank_cutoff is None:
        rank_cutoff = select_rank_cutoff(
            expression, percentile=rank_cutoff_percentile, auc_threshold=auc_threshold,
        )
    rank_cutoff = check_rank_cutoff(rank_cutoff, expression.n_genes)
    rankings = build_rankings(expression, seed=seed, n_workers=n_workers)
    scores = score_gene_sets(rankings, regulons, rank_cutoff, n_workers=n_workers)

    aucell_df = scores.to_frame().T
    save_aucell(scores.to_frame(), output_dir / "aucell.csv")
    log.info("AUCell matrix saved: %s", output_dir / "aucell.csv")

    pd.DataFrame(
        {"regulon": list(scores.errors), "reason": [str(e) for e in scores.errors.values()]},
        columns=["regulon", "reason"],
    ).to_csv(output_dir / "dropped_regulons.csv", index=False)

    thresholds = select_thresholds(
        scores,
        seed=seed,
        min_population_fraction=min_population_fraction,
        fallback_quantile=fallback_quantile,
        max_components=max_components,
        max_iter=max_iter,
        tol=tol,
        n_workers=n_workers,
    )
    thresholds.to_frame().to_csv(output_dir / "thresholds.csv", index=False)
    thresholds.binary_matrix().T.to_csv(output_dir / "binary.csv")
    log.info("Thresholds and binary activity saved to %s", output_dir)

    clustering = cluster_regulons(scores, method=linkage_method, max_clusters=max_clusters)
    clustering.to_frame().to_csv(output_dir / "regulon_clusters.csv", index=False)

    result = {
        "scores": scores,
        "thresholds": thresholds,
        "clustering": clustering,
        "aucell": aucell_df,
    }

    if h5ad_path is not None:
        adata = load_h5ad(h5ad_path)
        z_df = compute_zscore_matrix(aucell_df, celltype_col, obs_df=adata.obs)
        z_df.to_csv(output_dir / "aucell_zscore.csv")
        log.info("Z-score matrix saved: %s", output_dir / "aucell_zscore.csv")
        result["zscore"] = z_df

    return result


# ── CLI ───────────────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Score regulon activity per cell with AUCell and binarize it."
    )
    parser.add_argument("--config", help="Path to YAML config file.")
    parser.add_argument("--expression-file", help="Expression matrix (.h5ad, .loom or .csv).")
    parser.add_argument("--regulon-file", help="Regulons (.gmt or TF–target adjacency .csv).")
    parser.add_argument("--h5ad-file", help="Optional h5ad with cell metadata for z-scores.")
    parser.add_argument("--output-dir", required=True, help="Output directory.")
    parser.add_argument("--celltype-col", default="subclass", help="Cell type column name.")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--rank-cutoff", type=int, help="Explicit rank cutoff (top-k genes).")
    parser.add_argument("--rank-cutoff-percentile", type=float, default=1.0)
    parser.add_argument("--auc-threshold", type=float, help="Rank cutoff as a fraction of genes.")
    parser.add_argument("--min-genes", type=int, default=10)
    parser.add_argument("--include-tf", action="store_true", help="Add each TF to its regulon.")
    parser.add_argument("--min-population-fraction", type=float, default=0.01)
    parser.add_argument("--n-workers", type=int, default=1)
    args = parser.parse_args()

    cfg = load_config(args.config) if args.config else {}
    auc_cfg = cfg.get("aucell_scoring", {})
    bin_cfg = cfg.get("binarization", {})
    clust_cfg = cfg.get("regulon_clustering", {})
    paths_cfg = cfg.get("paths", {})

    run_aucell_pipeline(
        expression_path=args.expression_file or paths_cfg.get("expression_file", ""),
        regulon_path=args.regulon_file or paths_cfg.get("regulon_file", ""),
        output_dir=args.output_dir,
        seed=auc_cfg.get("seed", args.seed),
        rank_cutoff=auc_cfg.get("rank_cutoff", args.rank_cutoff),
        rank_cutoff_percentile=auc_cfg.get("rank_cutoff_percentile", args.rank_cutoff_percentile),
        auc_threshold=auc_cfg.get("auc_threshold", args.auc_threshold),
        min_genes=auc_cfg.get("min_genes", args.min_genes),
        include_tf=auc_cfg.get("include_tf", args.include_tf),
        min_population_fraction=bin_cfg.get("min_population_fraction", args.min_population_fraction),
        fallback_quantile=bin_cfg.get("fallback_quantile", 0.99),
        max_components=bin_cfg.get("max_components", 3),
        max_iter=bin_cfg.get("max_iter", 200),
        tol=bin_cfg.get("tol", 1e-4),
        linkage_method=clust_cfg.get("method", "average"),
        max_clusters=clust_cfg.get("max_clusters", 20),
        n_workers=auc_cfg.get("n_workers", args.n_workers),
        h5ad_path=args.h5ad_file or paths_cfg.get("h5ad_file"),
        celltype_col=auc_cfg.get("celltype_col", args.celltype_col),
    )


if __name__ == "__main__":
    main()
