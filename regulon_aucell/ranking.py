"""Per-cell gene rankings for AUCell.

Each cell's genes are ordered by expression, highest first (rank 1). Genes
with equal expression are ordered by a pseudo-random permutation drawn from a
generator seeded with (seed, cell index). This matters most for the large
block of zero-expression genes in every cell: shuffling them reproducibly
avoids favouring genes by their position in the matrix.

Cells are ranked independently and each worker writes only its own columns
of a preallocated rank array, so the result is identical for any number of
workers.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np

from .expression import ExpressionMatrix
from .utils.stats import make_rng

log = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class RankingSet:
    """1-based rank of every gene in every cell (genes × cells, int32)."""

    ranks: np.ndarray
    gene_ids: tuple
    cell_ids: tuple
    seed: int

    @property
    def n_genes(self) -> int:
        return self.ranks.shape[0]

    @property
    def n_cells(self) -> int:
        return self.ranks.shape[1]

    def order(self, j: int) -> list[str]:
        """Gene IDs of cell j from rank 1 (highest expression) to rank n."""
        by_rank = np.argsort(self.ranks[:, j], kind="stable")
        return [self.gene_ids[i] for i in by_rank]


def rank_cell(values: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """Rank one cell's genes by descending expression with random tie-breaks.

    Args:
        values: Expression values of one cell (length n_genes).
        rng: Generator used to shuffle genes before the stable sort.

    Returns:
        int32 array where element i is the 1-based rank of gene i.
    """
    perm = rng.permutation(values.shape[0])
    order = perm[np.argsort(-values[perm], kind="stable")]
    ranks = np.empty(values.shape[0], dtype=np.int32)
    ranks[order] = np.arange(1, values.shape[0] + 1, dtype=np.int32)
    return ranks


def build_rankings(
    expression: ExpressionMatrix,
    seed: int = 42,
    n_workers: int = 1,
) -> RankingSet:
    """Build the ranking of all genes in every cell.

    Args:
        expression: Genes × cells expression matrix.
        seed: Run-level seed; cell j uses a generator seeded by (seed, j).
        n_workers: Number of worker threads. Does not affect the result.

    Returns:
        RankingSet holding the 1-based rank of each gene in each cell.
    """
    ranks = np.empty((expression.n_genes, expression.n_cells), dtype=np.int32)

    def rank_block(cells: range) -> None:
        for j in cells:
            ranks[:, j] = rank_cell(expression.column(j), make_rng(seed, j))

    blocks = _split(expression.n_cells, n_workers)
    if n_workers > 1 and len(blocks) > 1:
        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            for future in [executor.submit(rank_block, b) for b in blocks]:
                future.result()
    else:
        for b in blocks:
            rank_block(b)

    ranks.flags.writeable = False
    log.info(
        "Ranked %d genes in %d cells (seed=%d)", expression.n_genes, expression.n_cells, seed,
    )
    return RankingSet(ranks, expression.gene_ids, expression.cell_ids, seed)


def _split(n: int, n_workers: int) -> list[range]:
    """Split range(n) into at most n_workers contiguous, non-empty blocks."""
    n_blocks = max(1, min(n, n_workers))
    bounds = np.linspace(0, n, n_blocks + 1).astype(int)
    return [range(a, b) for a, b in zip(bounds[:-1], bounds[1:]) if b > a]
