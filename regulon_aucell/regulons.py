"""Regulon catalogs: named gene sets to be scored with AUCell.

Regulons are built upstream by GRN inference and cisTarget pruning (out of
scope here). This module turns their output into GeneSet records:

  1. From a TF–target adjacency table (columns ['TF', 'target',
     'importance']): one regulon per TF, named '<TF>(+)', containing its
     targets. Self-loops are removed. The TF gene itself is added to its own
     regulon only when include_tf=True.
  2. From a GMT file (see utils.io.load_gmt).

Regulons with fewer than min_genes members are rejected before scoring.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

import pandas as pd

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneSet:
    """A named set of gene identifiers, optionally tagged with its regulator."""

    name: str
    genes: frozenset = field(default_factory=frozenset)
    regulator: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "genes", frozenset(str(g) for g in self.genes))

    def __len__(self) -> int:
        return len(self.genes)


# ── Adjacency → regulons ──────────────────────────────────────────────────────

def remove_self_loops(df: pd.DataFrame) -> pd.DataFrame:
    """Remove edges where the TF targets itself.

    Args:
        df: Adjacency DataFrame with columns ['TF', 'target', 'importance'].

    Returns:
        Filtered copy of df.
    """
    return df[df["TF"] != df["target"]].copy()


def regulons_from_adjacency(
    adj_df: pd.DataFrame,
    include_tf: bool = False,
    min_importance: Optional[float] = None,
) -> list[GeneSet]:
    """Group a TF–target adjacency table into one regulon per TF.

    Args:
        adj_df: DataFrame with columns ['TF', 'target'] and optionally
            'importance'.
        include_tf: Add the TF gene to its own regulon.
        min_importance: If given, drop edges with importance below this value
            before grouping.

    Returns:
        List of GeneSet records sorted by regulon name.
    """
    missing = {"TF", "target"} - set(adj_df.columns)
    if missing:
        raise ValueError(f"Adjacency table missing columns: {missing}")

    df = remove_self_loops(adj_df)
    if min_importance is not None and "importance" in df.columns:
        df = df[df["importance"] >= min_importance]

    regulons = []
    for tf, targets in df.groupby("TF", sort=True)["target"]:
        genes = set(targets.astype(str))
        if include_tf:
            genes.add(str(tf))
        regulons.append(GeneSet(name=f"{tf}(+)", genes=frozenset(genes), regulator=str(tf)))

    log.info("Built %d regulons from %d edges", len(regulons), len(df))
    return regulons


def filter_gene_sets(gene_sets: Iterable[GeneSet], min_genes: int = 10) -> list[GeneSet]:
    """Reject gene sets with fewer than min_genes members.

    Args:
        gene_sets: Candidate gene sets.
        min_genes: Minimum number of member genes (default 10).

    Returns:
        Gene sets that pass, in input order.
    """
    kept, rejected = [], []
    for gs in gene_sets:
        (kept if len(gs) >= min_genes else rejected).append(gs)
    if rejected:
        log.info(
            "Rejected %d gene sets with < %d genes (e.g. %s)",
            len(rejected), min_genes, ", ".join(gs.name for gs in rejected[:3]),
        )
    return kept
