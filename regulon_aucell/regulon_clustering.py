"""Grouping of regulons by correlated activity across cells.

Regulons whose AUCell scores rise and fall in the same cells are grouped
together for display:

  1. Keep regulons whose scores vary across cells (std > 0).
  2. Dissimilarity = 1 − Spearman correlation of their score rows.
  3. Hierarchical agglomerative clustering (average linkage by default).
  4. Display order from the dendrogram leaves.
  5. Flat clusters: cut the tree at k = 2..max_clusters groups and keep the
     k with the best silhouette score.

This is presentation support only. With fewer than two variable regulons,
or if clustering fails, an empty result with a reason is returned instead of
an error.

Usage:
    python -m regulon_aucell.regulon_clustering --aucell-file results/aucell/aucell.csv \\
        --output-dir results/regulon_clustering/
"""

import argparse
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import dendrogram, fcluster, linkage
from scipy.spatial.distance import squareform
from sklearn.metrics import silhouette_score

from .utils.io import load_aucell, load_config
from .utils.stats import spearman_dissimilarity

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
log = logging.getLogger(__name__)


@dataclass
class RegulonClustering:
    """Display order and flat cluster labels for variable regulons."""

    order: list
    labels: pd.Series
    n_clusters: int
    linkage: Optional[np.ndarray] = None
    reason: Optional[str] = None

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "regulon": self.order,
                "cluster": [int(self.labels[r]) for r in self.order],
                "position": range(len(self.order)),
            },
            columns=["regulon", "cluster", "position"],
        )


def _empty(reason: str) -> RegulonClustering:
    log.warning("Regulon clustering skipped: %s", reason)
    return RegulonClustering(order=[], labels=pd.Series(dtype=int), n_clusters=0, reason=reason)


def select_n_clusters(
    Z: np.ndarray,
    dist: np.ndarray,
    max_clusters: int = 20,
) -> tuple[int, np.ndarray]:
    """Choose the flat cluster count with the best silhouette score.

    Args:
        Z: Linkage matrix from scipy.cluster.hierarchy.linkage.
        dist: Square dissimilarity matrix used for the linkage.
        max_clusters: Largest number of clusters considered.

    Returns:
        Tuple of (n_clusters, labels). Ties go to the smaller n_clusters.
        With fewer than three items everything is one cluster.
    """
    n = dist.shape[0]
    best_k, best_labels, best_score = 1, np.ones(n, dtype=int), -np.inf
    for k in range(2, min(max_clusters, n - 1) + 1):
        labels = fcluster(Z, t=k, criterion="maxclust")
        n_found = len(np.unique(labels))
        if n_found < 2 or n_found >= n:
            continue
        score = silhouette_score(dist, labels, metric="precomputed")
        if score > best_score:
            best_k, best_labels, best_score = n_found, labels, score
    return best_k, best_labels


def cluster_regulons(
    scores,
    method: str = "average",
    max_clusters: int = 20,
) -> RegulonClustering:
    """Order and group regulons by Spearman correlation of their activity.

    Args:
        scores: ScoreMatrix, or a DataFrame of shape (n_regulons × n_cells).
        method: scipy linkage method ('average', 'complete', 'single', ...).
        max_clusters: Largest number of flat clusters considered.

    Returns:
        RegulonClustering over the variable regulons; empty with a reason if
        fewer than two regulons vary or clustering fails.
    """
    score_df = scores if isinstance(scores, pd.DataFrame) else scores.to_frame()
    variable = score_df[score_df.std(axis=1) > 0]
    if len(variable) < 2:
        return _empty(f"{len(variable)} variable regulon(s); need at least 2")

    try:
        dist = spearman_dissimilarity(variable)
        Z = linkage(squareform(dist.to_numpy(), checks=False), method=method)
        order = [dist.index[i] for i in dendrogram(Z, no_plot=True)["leaves"]]
        n_clusters, labels = select_n_clusters(Z, dist.to_numpy(), max_clusters=max_clusters)
    except ValueError as err:
        return _empty(str(err))

    log.info(
        "Clustered %d variable regulons into %d groups (%s linkage)",
        len(variable), n_clusters, method,
    )
    return RegulonClustering(
        order=order,
        labels=pd.Series(labels, index=dist.index, name="cluster"),
        n_clusters=n_clusters,
        linkage=Z,
    )


# ── CLI ───────────────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Cluster regulons by correlated AUCell activity across cells."
    )
    parser.add_argument("--config", help="Path to YAML config file.")
    parser.add_argument("--aucell-file", required=True, help="AUCell CSV (cells × regulons).")
    parser.add_argument("--output-dir", required=True, help="Output directory.")
    parser.add_argument("--method", default="average", help="Linkage method.")
    parser.add_argument("--max-clusters", type=int, default=20)
    args = parser.parse_args()

    cfg = load_config(args.config) if args.config else {}
    clust_cfg = cfg.get("regulon_clustering", {})

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    clustering = cluster_regulons(
        load_aucell(args.aucell_file).T,
        method=clust_cfg.get("method", args.method),
        max_clusters=clust_cfg.get("max_clusters", args.max_clusters),
    )
    clustering.to_frame().to_csv(output_dir / "regulon_clusters.csv", index=False)
    log.info("Regulon clusters saved: %s", output_dir / "regulon_clusters.csv")


if __name__ == "__main__":
    main()
