"""Pytest configuration and shared fixtures for regulon_aucell tests."""

import numpy as np
import pandas as pd
import pytest

from regulon_aucell.expression import ExpressionMatrix
from regulon_aucell.regulons import GeneSet


# ============================================================================
# Expression Fixtures
# ============================================================================


@pytest.fixture
def toy_expression() -> ExpressionMatrix:
    """3 cells × 5 genes with a block of zeros in every cell."""
    values = [
        [5, 0, 0],
        [4, 0, 0],
        [3, 1, 0],
        [0, 2, 0],
        [0, 3, 1],
    ]
    return ExpressionMatrix(
        np.array(values, dtype=float),
        ("g1", "g2", "g3", "g4", "g5"),
        ("c1", "c2", "c3"),
    )


def make_counts(n_genes: int = 200, n_cells: int = 60, lam: float = 0.5, seed: int = 0) -> pd.DataFrame:
    """Sparse Poisson counts (genes × cells) with many zeros."""
    rng = np.random.default_rng(seed)
    return pd.DataFrame(
        rng.poisson(lam, size=(n_genes, n_cells)).astype(float),
        index=[f"G{i:04d}" for i in range(n_genes)],
        columns=[f"cell_{j:03d}" for j in range(n_cells)],
    )


@pytest.fixture
def counts_df() -> pd.DataFrame:
    return make_counts()


@pytest.fixture
def sparse_expression(counts_df) -> ExpressionMatrix:
    """200 genes × 60 cells of Poisson(0.5) counts."""
    return ExpressionMatrix.from_dataframe(counts_df)


@pytest.fixture
def catalog() -> list[GeneSet]:
    """Four regulons over the sparse_expression genes, one partly outside it."""
    return [
        GeneSet("TF_A(+)", frozenset(f"G{i:04d}" for i in range(0, 15)), regulator="TF_A"),
        GeneSet("TF_B(+)", frozenset(f"G{i:04d}" for i in range(20, 45)), regulator="TF_B"),
        GeneSet("TF_C(+)", frozenset(f"G{i:04d}" for i in range(100, 112))),
        GeneSet(
            "TF_D(+)",
            frozenset([f"G{i:04d}" for i in range(150, 160)] + ["MISSING1", "MISSING2"]),
        ),
    ]


# ============================================================================
# Score Fixtures
# ============================================================================


@pytest.fixture
def bimodal_scores() -> pd.DataFrame:
    """One regulon: 80 cells near 0.1 and 20 cells near 0.9."""
    rng = np.random.default_rng(7)
    low = np.clip(rng.normal(0.1, 0.01, 80), 0.0, 1.0)
    high = np.clip(rng.normal(0.9, 0.01, 20), 0.0, 1.0)
    cells = [f"cell_{j:03d}" for j in range(100)]
    return pd.DataFrame([np.concatenate([low, high])], index=["BIMODAL(+)"], columns=cells)
