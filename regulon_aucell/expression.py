"""Read-only expression matrix shared by the ranking and scoring stages.

The matrix is stored genes × cells (one column per cell), which is the
orientation rankings are built in. AnnData objects are cells × genes and are
transposed on load.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse

from .exceptions import InvalidMatrix

log = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class ExpressionMatrix:
    """Genes × cells expression values with gene and cell identifiers.

    Values are flagged read-only on construction, so the matrix can be shared
    by worker threads without locking. A writeable input array, or a view of
    one, is copied first; an array that is already read-only is used as is.
    """

    values: np.ndarray
    gene_ids: tuple
    cell_ids: tuple

    def __post_init__(self):
        values = np.asarray(self.values, dtype=np.float64)
        if values.flags.writeable and (values is self.values or values.base is not None):
            values = values.copy()
        if values.ndim != 2:
            raise InvalidMatrix(f"Expression matrix must be 2-D; got {values.ndim} dimension(s).")
        n_genes, n_cells = values.shape
        if n_genes == 0 or n_cells == 0:
            raise InvalidMatrix(
                f"Expression matrix must have at least one gene and one cell; "
                f"got {n_genes} genes × {n_cells} cells."
            )
        gene_ids = tuple(str(g) for g in self.gene_ids)
        cell_ids = tuple(str(c) for c in self.cell_ids)
        if len(gene_ids) != n_genes or len(cell_ids) != n_cells:
            raise InvalidMatrix(
                f"Identifier counts ({len(gene_ids)} genes, {len(cell_ids)} cells) "
                f"do not match matrix shape {values.shape}."
            )
        _check_unique(gene_ids, "gene")
        _check_unique(cell_ids, "cell")
        if not np.all(np.isfinite(values)):
            raise InvalidMatrix("Expression matrix contains NaN or infinite values.")
        if np.any(values < 0):
            raise InvalidMatrix("Expression matrix contains negative values.")

        values.flags.writeable = False
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "gene_ids", gene_ids)
        object.__setattr__(self, "cell_ids", cell_ids)

    # ── Constructors ──────────────────────────────────────────────────────────

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "ExpressionMatrix":
        """Build from a DataFrame of shape (n_genes × n_cells)."""
        values = df.to_numpy(dtype=np.float64, copy=True)
        values.flags.writeable = False
        return cls(values, tuple(df.index), tuple(df.columns))

    @classmethod
    def from_anndata(cls, adata, layer: Optional[str] = None) -> "ExpressionMatrix":
        """Build from an AnnData object (cells × genes).

        Args:
            adata: AnnData with cell IDs in obs_names and gene IDs in var_names.
            layer: Optional layer to use instead of adata.X.

        Returns:
            ExpressionMatrix with genes as rows.
        """
        X = adata.layers[layer] if layer is not None else adata.X
        if sparse.issparse(X):
            X = X.toarray().astype(np.float64, copy=False)
        else:
            X = np.array(X, dtype=np.float64)
        log.info("Loaded expression from AnnData: %d cells × %d genes", *X.shape)
        # Read-only view of a private array, stored without another copy.
        values = X.T
        values.flags.writeable = False
        return cls(values, tuple(adata.var_names), tuple(adata.obs_names))

    # ── Accessors ─────────────────────────────────────────────────────────────

    @property
    def n_genes(self) -> int:
        return self.values.shape[0]

    @property
    def n_cells(self) -> int:
        return self.values.shape[1]

    def column(self, j: int) -> np.ndarray:
        """Expression values of cell j across all genes."""
        return self.values[:, j]

    def gene_index(self) -> dict[str, int]:
        """Map gene ID → row position."""
        return {g: i for i, g in enumerate(self.gene_ids)}

    def genes_detected_per_cell(self) -> np.ndarray:
        """Number of genes with non-zero expression in each cell."""
        return np.count_nonzero(self.values, axis=0)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.values, index=list(self.gene_ids), columns=list(self.cell_ids))


def _check_unique(ids: Sequence[str], kind: str) -> None:
    seen = pd.Index(ids)
    if not seen.is_unique:
        dupes = seen[seen.duplicated()].unique().tolist()[:5]
        raise InvalidMatrix(f"Duplicate {kind} identifiers: {dupes}")
