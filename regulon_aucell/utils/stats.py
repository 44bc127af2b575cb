"""Shared statistical functions used across analysis modules."""

from typing import Optional
import numpy as np
import pandas as pd


def derive_seed(seed: int, index: int) -> int:
    """Derive an independent 32-bit seed for one cell or one regulon.

    Seeds are a pure function of (seed, index), so a worker can build its own
    generator without touching shared random state. Results therefore do not
    depend on how work is split across workers or the order it completes in.

    Args:
        seed: Run-level seed.
        index: Position of the cell (rankings) or regulon (thresholds).

    Returns:
        Integer seed in [0, 2**32).
    """
    return int(np.random.SeedSequence([int(seed), int(index)]).generate_state(1)[0])


def make_rng(seed: int, index: int) -> np.random.Generator:
    """Return a numpy Generator seeded from (seed, index)."""
    return np.random.default_rng(np.random.SeedSequence([int(seed), int(index)]))


def spearman_dissimilarity(score_df: pd.DataFrame) -> pd.DataFrame:
    """Compute 1 − Spearman correlation between the rows of a score matrix.

    Rows are regulons and columns are cells. Two regulons whose activity rises
    and falls in the same cells get a dissimilarity near 0; anti-correlated
    regulons approach 2.

    Args:
        score_df: DataFrame of shape (n_regulons × n_cells).

    Returns:
        Square DataFrame of shape (n_regulons × n_regulons) with values in [0, 2]
        and a zero diagonal.
    """
    rho = score_df.T.corr(method="spearman")
    dist = (1.0 - rho).clip(lower=0.0, upper=2.0)
    values = dist.to_numpy(copy=True)
    np.fill_diagonal(values, 0.0)
    return pd.DataFrame(values, index=dist.index, columns=dist.columns)


def compute_zscore_matrix(
    aucell_df: pd.DataFrame,
    celltype_col: str,
    obs_df: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """Compute per-cell-type z-scored AUCell activity.

    For each regulon, calculates the mean AUCell score within each cell type,
    then normalizes relative to the global mean and standard deviation across
    all cells.

    Formula: z = (celltype_mean - global_mean) / global_std

    Args:
        aucell_df: DataFrame of shape (n_cells × n_regulons). Index must be
            cell IDs matching obs_df if provided.
        celltype_col: Column name in obs_df containing cell type labels. If
            obs_df is None, aucell_df must already contain this column.
        obs_df: Optional metadata DataFrame with cell type annotations.
            If provided, the celltype_col is joined onto aucell_df by index.

    Returns:
        DataFrame of shape (n_celltypes × n_regulons) with z-scores. Regulons
        with zero variance across cells get NaN.
    """
    df = aucell_df.copy()
    if obs_df is not None:
        df[celltype_col] = df.index.map(obs_df[celltype_col])
    df = df.dropna(subset=[celltype_col])

    regulon_cols = [c for c in df.columns if c != celltype_col]
    global_mean = df[regulon_cols].mean()
    global_std = df[regulon_cols].std().replace(0.0, np.nan)

    z_matrix = (
        df.groupby(celltype_col, observed=True)[regulon_cols].mean() - global_mean
    ) / global_std
    return z_matrix
