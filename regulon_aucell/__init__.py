"""
regulon_aucell: per-cell regulon activity scoring and binarization with AUCell.

Analyses:
    1. ranking             — Seeded per-cell gene rankings
    2. aucell_scoring      — AUC enrichment of regulons in each cell's ranking
    3. binarization        — Mixture-model activity thresholds per regulon
    4. regulon_clustering  — Regulon grouping by correlated activity
"""

__version__ = "0.1.0"
