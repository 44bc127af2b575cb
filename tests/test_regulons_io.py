"""Unit tests for regulon catalogs and file loaders."""

import numpy as np
import pandas as pd
import pytest

from regulon_aucell.regulons import GeneSet, filter_gene_sets, regulons_from_adjacency
from regulon_aucell.utils.io import (
    load_aucell,
    load_config,
    load_expression,
    load_gmt,
    load_regulons,
    save_aucell,
    save_gmt,
)


@pytest.fixture
def adjacency() -> pd.DataFrame:
    return pd.DataFrame({
        "TF": ["MEF2C", "MEF2C", "MEF2C", "SOX9", "SOX9"],
        "target": ["G1", "G2", "MEF2C", "G3", "G4"],
        "importance": [5.0, 1.0, 3.0, 2.0, 0.5],
    })


class TestRegulonsFromAdjacency:
    """Tests for grouping adjacency edges into regulons."""

    def test_one_regulon_per_tf(self, adjacency):
        """Each TF becomes '<TF>(+)' with its targets."""
        regulons = {gs.name: gs for gs in regulons_from_adjacency(adjacency)}
        assert set(regulons) == {"MEF2C(+)", "SOX9(+)"}
        assert regulons["SOX9(+)"].genes == frozenset({"G3", "G4"})
        assert regulons["SOX9(+)"].regulator == "SOX9"

    def test_self_loops_removed(self, adjacency):
        """The TF is not its own target by default."""
        regulons = {gs.name: gs for gs in regulons_from_adjacency(adjacency)}
        assert regulons["MEF2C(+)"].genes == frozenset({"G1", "G2"})

    def test_include_tf(self, adjacency):
        """include_tf adds the regulator to its regulon."""
        regulons = {gs.name: gs for gs in regulons_from_adjacency(adjacency, include_tf=True)}
        assert "MEF2C" in regulons["MEF2C(+)"].genes
        assert "SOX9" in regulons["SOX9(+)"].genes

    def test_min_importance(self, adjacency):
        """Weak edges can be dropped before grouping."""
        regulons = {gs.name: gs for gs in regulons_from_adjacency(adjacency, min_importance=1.5)}
        assert regulons["MEF2C(+)"].genes == frozenset({"G1"})
        assert regulons["SOX9(+)"].genes == frozenset({"G3"})

    def test_missing_columns(self):
        """An adjacency table needs TF and target columns."""
        with pytest.raises(ValueError):
            regulons_from_adjacency(pd.DataFrame({"TF": ["A"]}))


class TestFilterGeneSets:
    """Tests for the minimum regulon size."""

    def test_small_sets_rejected(self):
        """Sets below min_genes are dropped, order preserved."""
        sets = [
            GeneSet("big", frozenset(f"g{i}" for i in range(12))),
            GeneSet("small", frozenset({"g1", "g2"})),
            GeneSet("exact", frozenset(f"g{i}" for i in range(10))),
        ]
        assert [gs.name for gs in filter_gene_sets(sets, min_genes=10)] == ["big", "exact"]


class TestLoaders:
    """Tests for file loaders."""

    def test_load_gmt(self, tmp_path):
        """GMT lines become gene sets; blank lines are skipped."""
        path = tmp_path / "sets.gmt"
        path.write_text("SET1\tdesc\tA\tB\tC\n\nSET2\t\tD\tE\n")
        sets = load_gmt(path)
        assert [gs.name for gs in sets] == ["SET1", "SET2"]
        assert sets[0].genes == frozenset({"A", "B", "C"})

    def test_save_gmt_is_loadable(self, tmp_path):
        """Saved catalogs load back with the same members."""
        path = tmp_path / "out" / "regulons.gmt"
        save_gmt([GeneSet("R(+)", frozenset({"x", "y"}), regulator="R")], path)
        assert load_gmt(path)[0].genes == frozenset({"x", "y"})

    def test_load_regulons_dispatch(self, tmp_path, adjacency):
        """CSV input is read as a TF–target adjacency table."""
        path = tmp_path / "grn.csv"
        adjacency.to_csv(path, index=False)
        assert {gs.name for gs in load_regulons(path)} == {"MEF2C(+)", "SOX9(+)"}

    def test_load_expression_csv(self, tmp_path, counts_df):
        """CSV expression is genes × cells."""
        path = tmp_path / "expr.csv"
        counts_df.to_csv(path)
        expr = load_expression(path)
        assert (expr.n_genes, expr.n_cells) == counts_df.shape
        np.testing.assert_array_equal(expr.values, counts_df.to_numpy())

    def test_load_expression_unknown_format(self, tmp_path):
        """Unknown extensions are rejected."""
        with pytest.raises(ValueError, match="Unsupported"):
            load_expression(tmp_path / "expr.parquet")

    def test_aucell_csv_orientation(self, tmp_path):
        """aucell.csv is written cells × regulons."""
        scores = pd.DataFrame([[0.1, 0.2]], index=["R(+)"], columns=["c1", "c2"])
        save_aucell(scores, tmp_path / "aucell.csv")
        loaded = load_aucell(tmp_path / "aucell.csv")
        assert list(loaded.index) == ["c1", "c2"]
        assert list(loaded.columns) == ["R(+)"]

    def test_load_config(self, tmp_path):
        """YAML sections load as nested dicts."""
        path = tmp_path / "config.yaml"
        path.write_text("binarization:\n  min_population_fraction: 0.05\n")
        assert load_config(path)["binarization"]["min_population_fraction"] == 0.05

    def test_load_config_missing(self, tmp_path):
        """A missing config file is an error."""
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")
