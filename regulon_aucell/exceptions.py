"""Error types raised by the AUCell scoring core.

All errors derive from ValueError so that callers written against plain
ValueError handling keep working.
"""


class AUCellError(ValueError):
    """Base class for malformed-input errors in the scoring core."""


class InvalidMatrix(AUCellError):
    """The expression matrix cannot be ranked (empty, non-finite, duplicated IDs)."""


class EmptyGeneSet(AUCellError):
    """A gene set has no members present in the expression matrix."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Gene set '{name}' has no genes present in the expression matrix.")


class InvalidCutoff(AUCellError):
    """The rank cutoff is not in [1, n_genes]."""

    def __init__(self, rank_cutoff: int, n_genes: int):
        self.rank_cutoff = rank_cutoff
        self.n_genes = n_genes
        super().__init__(
            f"Rank cutoff must be between 1 and the number of genes ({n_genes}); "
            f"got {rank_cutoff}."
        )
