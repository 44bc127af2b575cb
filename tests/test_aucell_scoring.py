"""Unit tests for AUCell scoring."""

import numpy as np
import pytest

from regulon_aucell.aucell_scoring import (
    auc_from_ranks,
    aucell_score,
    max_auc,
    score_gene_sets,
    select_rank_cutoff,
)
from regulon_aucell.exceptions import AUCellError, EmptyGeneSet, InvalidCutoff
from regulon_aucell.expression import ExpressionMatrix
from regulon_aucell.ranking import build_rankings
from regulon_aucell.regulons import GeneSet


class TestAUCFromRanks:
    """Tests for the normalized AUC statistic."""

    def test_top_ranks_score_one(self):
        """Members occupying ranks 1..m give the maximum score."""
        assert auc_from_ranks(np.array([2, 1]), 5) == pytest.approx(1.0)

    def test_members_beyond_cutoff_score_zero(self):
        """Members ranked after the cutoff contribute nothing."""
        assert auc_from_ranks(np.array([6, 7]), 5) == 0.0

    def test_partial_recovery(self):
        """A single member at rank 2 of k=5 recovers 4 of 5."""
        assert auc_from_ranks(np.array([2]), 5) == pytest.approx(0.8)

    def test_set_larger_than_cutoff(self):
        """Only the top min(|set|, k) ranks count towards the maximum."""
        assert max_auc(3, 2) == 3
        assert auc_from_ranks(np.array([1, 2, 3]), 2) == pytest.approx(1.0)

    def test_matrix_input(self):
        """Columns are scored independently."""
        ranks = np.array([[1, 4], [2, 5]])
        np.testing.assert_allclose(auc_from_ranks(ranks, 3), [1.0, 0.0])

    def test_adding_top_member_increases_raw_auc(self):
        """A member at an extra top rank raises the unnormalized area."""
        k = 10
        a = np.array([3, 7])
        b = np.array([3, 7, 1])
        raw_a = auc_from_ranks(a, k) * max_auc(len(a), k)
        raw_b = auc_from_ranks(b, k) * max_auc(len(b), k)
        assert raw_b > raw_a

    def test_adding_low_member_cannot_exceed_one(self):
        """A superset padded with low-ranked members stays within [0, 1]."""
        k = 10
        subset = np.array([1, 2])
        superset = np.array([1, 2, 50, 60])
        assert auc_from_ranks(superset, k) <= auc_from_ranks(subset, k) <= 1.0


class TestAUCellScore:
    """Tests for scoring one regulon against rankings."""

    def test_toy_top_pair_is_maximal(self, toy_expression):
        """{g1, g2} at k=5 scores 1.0 in cell 1."""
        rankings = build_rankings(toy_expression, seed=42)
        scores = aucell_score(rankings, GeneSet("pair", frozenset({"g1", "g2"})), 5)
        assert scores[0] == pytest.approx(1.0)

    def test_empty_gene_set_raises(self, toy_expression):
        """A regulon without genes in the matrix is an explicit error."""
        rankings = build_rankings(toy_expression)
        with pytest.raises(EmptyGeneSet):
            aucell_score(rankings, GeneSet("none", frozenset({"x", "y"})), 3)

    def test_score_one_iff_top_ranks(self, sparse_expression):
        """The genes at a cell's top ranks score 1 in that cell."""
        rankings = build_rankings(sparse_expression, seed=0)
        top = rankings.order(4)[:10]
        scores = aucell_score(rankings, GeneSet("top", frozenset(top)), 30)
        assert scores[4] == pytest.approx(1.0)
        is_top = [set(rankings.order(j)[:10]) == set(top) for j in range(rankings.n_cells)]
        np.testing.assert_array_equal(np.isclose(scores, 1.0), is_top)

    @pytest.mark.parametrize("cutoff", [0, -1, 6])
    def test_invalid_cutoff(self, toy_expression, cutoff):
        """Cutoffs outside 1..n_genes are rejected."""
        rankings = build_rankings(toy_expression)
        with pytest.raises(InvalidCutoff):
            aucell_score(rankings, GeneSet("pair", frozenset({"g1"})), cutoff)


class TestScoreGeneSets:
    """Tests for scoring a regulon catalog."""

    def test_scores_are_bounded(self, sparse_expression, catalog):
        """All scores lie in [0, 1]."""
        rankings = build_rankings(sparse_expression, seed=1)
        scores = score_gene_sets(rankings, catalog, rank_cutoff=50)
        assert scores.values.shape == (4, 60)
        assert np.all(scores.values >= 0.0) and np.all(scores.values <= 1.0)

    def test_effective_sizes_ignore_missing_genes(self, sparse_expression, catalog):
        """Members outside the matrix are not counted."""
        rankings = build_rankings(sparse_expression, seed=1)
        scores = score_gene_sets(rankings, catalog, rank_cutoff=50)
        assert scores.set_sizes["TF_D(+)"] == 10
        assert scores.set_sizes["TF_B(+)"] == 25

    def test_empty_set_dropped_and_reported(self):
        """An all-missing regulon is excluded while the others are scored."""
        expr = ExpressionMatrix(
            np.random.default_rng(0).poisson(1.0, (100, 8)).astype(float),
            tuple(f"G{i}" for i in range(100)),
            tuple(f"c{j}" for j in range(8)),
        )
        gene_sets = [
            GeneSet("ok(+)", frozenset(f"G{i}" for i in range(10))),
            GeneSet("ghost(+)", frozenset(f"NOPE{i}" for i in range(12))),
            GeneSet("ok2(+)", frozenset(f"G{i}" for i in range(40, 55))),
        ]
        scores = score_gene_sets(build_rankings(expr), gene_sets, rank_cutoff=20)
        assert scores.set_names == ("ok(+)", "ok2(+)")
        assert isinstance(scores.errors["ghost(+)"], EmptyGeneSet)
        assert scores.errors["ghost(+)"].name == "ghost(+)"

    def test_invalid_cutoff_is_fatal(self, sparse_expression, catalog):
        """A cutoff above the gene count aborts the run."""
        rankings = build_rankings(sparse_expression)
        with pytest.raises(InvalidCutoff):
            score_gene_sets(rankings, catalog, rank_cutoff=sparse_expression.n_genes + 1)

    def test_duplicate_names_rejected(self, sparse_expression):
        """Regulon names must be unique."""
        rankings = build_rankings(sparse_expression)
        gs = GeneSet("dup", frozenset({"G0001"}))
        with pytest.raises(AUCellError):
            score_gene_sets(rankings, [gs, gs], rank_cutoff=10)

    def test_worker_count_does_not_change_result(self, sparse_expression, catalog):
        """Parallel scoring is bit-identical to serial scoring."""
        rankings = build_rankings(sparse_expression, seed=8)
        serial = score_gene_sets(rankings, catalog, rank_cutoff=40, n_workers=1)
        parallel = score_gene_sets(rankings, catalog, rank_cutoff=40, n_workers=3)
        assert serial.values.tobytes() == parallel.values.tobytes()

    def test_rows_match_single_set_scoring(self, sparse_expression, catalog):
        """Catalog scoring equals scoring each regulon on its own."""
        rankings = build_rankings(sparse_expression, seed=8)
        scores = score_gene_sets(rankings, catalog, rank_cutoff=40)
        np.testing.assert_array_equal(
            scores.row("TF_B(+)"), aucell_score(rankings, catalog[1], 40),
        )

    def test_to_frame_orientation(self, sparse_expression, catalog):
        """to_frame is regulons × cells."""
        scores = score_gene_sets(build_rankings(sparse_expression), catalog, rank_cutoff=40)
        df = scores.to_frame()
        assert list(df.index) == [gs.name for gs in catalog]
        assert list(df.columns) == list(sparse_expression.cell_ids)


class TestSelectRankCutoff:
    """Tests for the rank cutoff policy."""

    @pytest.fixture
    def staircase(self) -> ExpressionMatrix:
        """10 genes × 4 cells detecting 2, 4, 6 and 8 genes."""
        values = np.zeros((10, 4))
        for j, n in enumerate([2, 4, 6, 8]):
            values[:n, j] = 1.0
        return ExpressionMatrix(values, tuple(f"g{i}" for i in range(10)), ("a", "b", "c", "d"))

    def test_percentile_of_detected_genes(self, staircase):
        """The cutoff follows the detected-genes distribution."""
        assert select_rank_cutoff(staircase, percentile=0) == 2
        assert select_rank_cutoff(staircase, percentile=100) == 8

    def test_fraction_of_genes(self, staircase):
        """auc_threshold takes a fixed fraction of all genes, rounded up."""
        assert select_rank_cutoff(staircase, auc_threshold=0.25) == 3

    def test_clipped_to_valid_range(self):
        """All-zero matrices still get a usable cutoff."""
        expr = ExpressionMatrix(np.zeros((5, 2)), tuple("abcde"), ("x", "y"))
        assert select_rank_cutoff(expr) == 1
        assert select_rank_cutoff(expr, auc_threshold=2.0) == 5
