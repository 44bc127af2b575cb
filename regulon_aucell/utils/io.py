"""I/O helpers for loading and saving analysis data."""

import logging
from pathlib import Path

import pandas as pd
import scanpy as sc
import loompy as lp
import yaml

from ..expression import ExpressionMatrix
from ..regulons import GeneSet, regulons_from_adjacency

log = logging.getLogger(__name__)


def load_h5ad(path: str | Path) -> sc.AnnData:
    """Load an AnnData object from an h5ad file.

    Args:
        path: Path to the .h5ad file.

    Returns:
        AnnData object with cells × genes expression matrix.
    """
    return sc.read_h5ad(str(path))


def load_loom(path: str | Path) -> ExpressionMatrix:
    """Load a pySCENIC-style loom file into an ExpressionMatrix.

    Loom rows are genes (row attribute 'Gene') and columns are cells
    (column attribute 'CellID').

    Args:
        path: Path to the .loom file.

    Returns:
        ExpressionMatrix of shape (n_genes × n_cells).
    """
    with lp.connect(str(path), mode="r", validate=False) as ds:
        values = ds[:, :].astype("float64", copy=False)
        values.flags.writeable = False
        genes = [str(g) for g in ds.ra.Gene]
        cells = [str(c) for c in ds.ca.CellID]
    return ExpressionMatrix(values, tuple(genes), tuple(cells))


def load_expression(path: str | Path) -> ExpressionMatrix:
    """Load an expression matrix from .h5ad, .loom or .csv.

    CSV files must be genes × cells with gene IDs in the first column.

    Args:
        path: Path to the expression file.

    Returns:
        ExpressionMatrix of shape (n_genes × n_cells).

    Raises:
        ValueError: If the file extension is not recognised.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".h5ad":
        expression = ExpressionMatrix.from_anndata(load_h5ad(path))
    elif suffix == ".loom":
        expression = load_loom(path)
    elif suffix in (".csv", ".tsv"):
        sep = "\t" if suffix == ".tsv" else ","
        expression = ExpressionMatrix.from_dataframe(pd.read_csv(path, sep=sep, index_col=0))
    else:
        raise ValueError(f"Unsupported expression file format: {path.suffix}")
    log.info(
        "Expression matrix %s: %d genes × %d cells", path.name, expression.n_genes, expression.n_cells,
    )
    return expression


def load_adj(path: str | Path) -> pd.DataFrame:
    """Load a GRN adjacency file (TF–target–importance table).

    Args:
        path: Path to a CSV with columns ['TF', 'target', 'importance'].

    Returns:
        DataFrame with columns ['TF', 'target', 'importance'].

    Raises:
        ValueError: If required columns are missing.
    """
    df = pd.read_csv(path)
    required = {"TF", "target", "importance"}
    missing = required - set(df.columns)
    if missing:
        raise ValueError(f"Adjacency file missing columns: {missing}")
    return df[["TF", "target", "importance"]]


def load_gmt(path: str | Path) -> list[GeneSet]:
    """Load gene sets from a GMT file.

    Each line is 'name<TAB>description<TAB>gene1<TAB>gene2...'. Blank lines
    are skipped.

    Args:
        path: Path to the .gmt file.

    Returns:
        List of GeneSet records in file order.
    """
    gene_sets = []
    with open(path) as f:
        for line in f:
            fields = [x.strip() for x in line.rstrip("\n").split("\t")]
            if not fields or not fields[0]:
                continue
            genes = frozenset(g for g in fields[2:] if g)
            gene_sets.append(GeneSet(name=fields[0], genes=genes))
    return gene_sets


def load_regulons(path: str | Path, include_tf: bool = False) -> list[GeneSet]:
    """Load a regulon catalog from a GMT file or a TF–target adjacency CSV.

    Args:
        path: Path to a .gmt file or an adjacency .csv.
        include_tf: For adjacency input, add each TF to its own regulon.

    Returns:
        List of GeneSet records.
    """
    path = Path(path)
    if path.suffix.lower() == ".gmt":
        return load_gmt(path)
    return regulons_from_adjacency(load_adj(path), include_tf=include_tf)


def load_aucell(path: str | Path) -> pd.DataFrame:
    """Load an AUCell output CSV (cells × regulons).

    Args:
        path: Path to the AUCell .csv file.

    Returns:
        DataFrame with cell IDs as the index and regulon names as columns.
    """
    df = pd.read_csv(path, index_col=0)
    df.index = df.index.astype(str)
    return df


def save_aucell(score_df: pd.DataFrame, path: str | Path) -> None:
    """Save a regulons × cells score matrix as cells × regulons CSV.

    Args:
        score_df: DataFrame of shape (n_regulons × n_cells).
        path: Output path for the CSV file.
    """
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    score_df.T.to_csv(path)


def save_gmt(gene_sets: list[GeneSet], path: str | Path) -> None:
    """Write gene sets to a GMT file with sorted members."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        for gs in gene_sets:
            f.write("\t".join([gs.name, gs.regulator or "", *sorted(gs.genes)]) + "\n")


def load_config(path: str | Path) -> dict:
    """Load a YAML configuration file.

    Args:
        path: Path to a YAML config file.

    Returns:
        Dictionary of configuration parameters.

    Raises:
        FileNotFoundError: If the config file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        return yaml.safe_load(f) or {}
