"""Binarization of AUCell scores into active/inactive calls per regulon.

For each regulon the distribution of its AUCell scores across cells is
modelled as a Gaussian mixture with 1..max_components components (fitted by
EM with a fixed iteration cap and tolerance, chosen by BIC). Between every
pair of adjacent components the lowest point of the fitted density is a
candidate threshold. A candidate is accepted only if it is an interior
minimum and leaves at least min_population_fraction of the cells on both
sides, with the active (high-score) group no larger than the inactive one.
The accepted candidate with the lowest density wins.

If nothing is accepted (no variation, non-convergence, a unimodal fit, no
interior minimum, or a minority that is too small) the threshold falls back
to a fixed quantile of the regulon's own scores. The Threshold comment
records which path was taken; fitting problems are never raised.

Mixture initialization for regulon i is seeded with (seed, i), so results
do not depend on the number of workers.

Usage:
    python -m regulon_aucell.binarization --aucell-file results/aucell/aucell.csv \\
        --output-dir results/binarization/
"""

import argparse
import logging
import math
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import numpy as np
import pandas as pd
from sklearn.exceptions import ConvergenceWarning
from sklearn.mixture import GaussianMixture

from .exceptions import AUCellError
from .utils.io import load_aucell, load_config
from .utils.stats import derive_seed

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
log = logging.getLogger(__name__)

GRID_POINTS = 512
SMALL_POPULATION_FRACTION = 0.05


@dataclass(frozen=True)
class Threshold:
    """Activity threshold and resulting active cells for one regulon."""

    name: str
    threshold: float
    active_cells: frozenset
    comment: str
    fallback: bool
    n_components: int = 0


class ThresholdSet:
    """Thresholds for every row of a score matrix, in row order."""

    def __init__(self, thresholds: list[Threshold], cell_ids: tuple):
        self._thresholds = {t.name: t for t in thresholds}
        self.cell_ids = tuple(cell_ids)

    def __getitem__(self, name: str) -> Threshold:
        return self._thresholds[name]

    def __iter__(self) -> Iterator[Threshold]:
        return iter(self._thresholds.values())

    def __len__(self) -> int:
        return len(self._thresholds)

    def __contains__(self, name: str) -> bool:
        return name in self._thresholds

    def to_frame(self) -> pd.DataFrame:
        """One row per regulon with threshold, active-cell counts and fit notes."""
        n_cells = len(self.cell_ids)
        return pd.DataFrame(
            [
                {
                    "regulon": t.name,
                    "threshold": t.threshold,
                    "n_active": len(t.active_cells),
                    "fraction_active": len(t.active_cells) / n_cells if n_cells else 0.0,
                    "n_components": t.n_components,
                    "fallback": t.fallback,
                    "comment": t.comment,
                }
                for t in self
            ],
            columns=[
                "regulon", "threshold", "n_active", "fraction_active",
                "n_components", "fallback", "comment",
            ],
        )

    def binary_matrix(self) -> pd.DataFrame:
        """0/1 activity matrix of shape (n_regulons × n_cells)."""
        cells = list(self.cell_ids)
        data = np.zeros((len(self), len(cells)), dtype=np.int8)
        for i, t in enumerate(self):
            data[i] = [c in t.active_cells for c in cells]
        return pd.DataFrame(data, index=[t.name for t in self], columns=cells)


# ── Mixture fitting ───────────────────────────────────────────────────────────

def fit_mixture(
    scores: np.ndarray,
    random_state: int,
    max_components: int = 3,
    max_iter: int = 200,
    tol: float = 1e-4,
) -> Optional[GaussianMixture]:
    """Fit Gaussian mixtures with 1..max_components components, best by BIC.

    Args:
        scores: 1-D array of scores for one regulon.
        random_state: Seed for k-means initialization of EM.
        max_components: Largest number of components tried. Never more than
            the number of distinct scores.
        max_iter: EM iteration cap per fit.
        tol: EM convergence tolerance on the lower bound.

    Returns:
        The fitted model with the lowest BIC, or None if no fit succeeded.
    """
    X = scores.reshape(-1, 1)
    n_unique = len(np.unique(scores))
    best, best_bic = None, np.inf
    for n in range(1, min(max_components, n_unique) + 1):
        gmm = GaussianMixture(
            n_components=n, max_iter=max_iter, tol=tol, n_init=1, random_state=random_state,
        )
        try:
            gmm.fit(X)
        except ValueError as err:
            log.debug("Mixture fit with %d components failed: %s", n, err)
            continue
        bic = gmm.bic(X)
        if bic < best_bic:
            best, best_bic = gmm, bic
    return best


def candidate_boundaries(gmm: GaussianMixture) -> list[tuple[float, float]]:
    """Interior density minima between adjacent mixture components.

    Args:
        gmm: Fitted one-dimensional GaussianMixture.

    Returns:
        List of (boundary, log_density) pairs, one per adjacent component pair
        whose density has a strict minimum between the two means.
    """
    means = np.sort(gmm.means_.ravel())
    candidates = []
    for lo, hi in zip(means[:-1], means[1:]):
        if not hi > lo:
            continue
        grid = np.linspace(lo, hi, GRID_POINTS)
        log_dens = gmm.score_samples(grid.reshape(-1, 1))
        lowest = log_dens.min()
        if not (lowest < log_dens[0] and lowest < log_dens[-1]):
            continue
        # Flat valleys (e.g. well-separated narrow components) take the middle.
        at_min = np.flatnonzero(log_dens <= lowest)
        candidates.append((float(grid[at_min[len(at_min) // 2]]), float(lowest)))
    return candidates


# ── Threshold selection ───────────────────────────────────────────────────────

def fallback_threshold(scores: np.ndarray, quantile: float) -> float:
    """Quantile of the scores, nudged above the minimum so ties at it stay inactive."""
    threshold = float(np.quantile(scores, quantile))
    lowest = float(scores.min())
    if threshold <= lowest:
        threshold = float(np.nextafter(lowest, np.inf))
    return threshold


def derive_threshold(
    name: str,
    scores: np.ndarray,
    cell_ids: tuple,
    random_state: int,
    min_population_fraction: float = 0.01,
    fallback_quantile: float = 0.99,
    max_components: int = 3,
    max_iter: int = 200,
    tol: float = 1e-4,
) -> Threshold:
    """Select the activity threshold for one regulon.

    Args:
        name: Regulon name.
        scores: AUCell scores of the regulon, one per cell.
        cell_ids: Cell IDs aligned with scores.
        random_state: Seed for the mixture fit.
        min_population_fraction: Smallest accepted fraction of cells on
            either side of the threshold.
        fallback_quantile: Quantile of scores used when no split is accepted.
        max_components: Largest mixture fitted.
        max_iter: EM iteration cap.
        tol: EM convergence tolerance.

    Returns:
        Threshold whose active_cells are exactly the cells with
        score ≥ threshold.
    """
    scores = np.asarray(scores, dtype=np.float64)
    n_cells = scores.shape[0]
    min_population = max(1, math.ceil(min_population_fraction * n_cells))

    threshold, comment, n_components = None, None, 0
    if np.ptp(scores) == 0:
        reason = "no variation"
    else:
        gmm = fit_mixture(scores, random_state, max_components, max_iter, tol)
        n_components = gmm.n_components if gmm is not None else 0
        if gmm is None:
            reason = "fit failed"
        elif not gmm.converged_:
            reason = "fit did not converge"
        elif gmm.n_components == 1:
            reason = "unimodal fit"
        else:
            candidates = candidate_boundaries(gmm)
            valid = []
            for boundary, log_dens in candidates:
                n_active = int(np.count_nonzero(scores >= boundary))
                if min_population <= n_active <= n_cells - n_active:
                    valid.append((log_dens, boundary))
            if not candidates:
                reason = "no interior minimum"
            elif not valid:
                reason = "minority below minimum population"
            else:
                threshold = min(valid)[1]
                if gmm.n_components == 2:
                    comment = "clear bimodal split"
                else:
                    comment = f"multimodal split ({gmm.n_components} components)"

    fallback = threshold is None
    if fallback:
        threshold = fallback_threshold(scores, fallback_quantile)
        comment = f"no clear threshold; used global quantile ({reason})"
        log.debug("%s: fallback threshold %.4f (%s)", name, threshold, reason)

    active = scores >= threshold
    if not fallback and np.count_nonzero(active) < SMALL_POPULATION_FRACTION * n_cells:
        comment += ", small population"

    return Threshold(
        name=name,
        threshold=float(threshold),
        active_cells=frozenset(c for c, a in zip(cell_ids, active) if a),
        comment=comment,
        fallback=fallback,
        n_components=n_components,
    )


def select_thresholds(
    scores,
    seed: int = 42,
    min_population_fraction: float = 0.01,
    fallback_quantile: float = 0.99,
    max_components: int = 3,
    max_iter: int = 200,
    tol: float = 1e-4,
    n_workers: int = 1,
) -> ThresholdSet:
    """Select an activity threshold for every regulon of a score matrix.

    Never raises for fitting problems: every regulon receives a threshold,
    falling back to fallback_quantile of its own scores when needed.

    Args:
        scores: ScoreMatrix, or a DataFrame of shape (n_regulons × n_cells).
        seed: Run seed; regulon i is fitted with derive_seed(seed, i).
        min_population_fraction: Smallest accepted fraction of active cells.
        fallback_quantile: Quantile used for the fallback threshold.
        max_components: Largest mixture fitted per regulon.
        max_iter: EM iteration cap per fit.
        tol: EM convergence tolerance.
        n_workers: Number of worker threads. Does not affect the result.

    Returns:
        ThresholdSet with one Threshold per row, in row order.

    Raises:
        AUCellError: If a DataFrame input has duplicate row names.
    """
    if isinstance(scores, pd.DataFrame):
        if not scores.index.is_unique:
            dupes = scores.index[scores.index.duplicated()].unique().tolist()[:5]
            raise AUCellError(f"Duplicate regulon names in score matrix: {dupes}")
        values = scores.to_numpy(dtype=np.float64)
        names = [str(n) for n in scores.index]
        cell_ids = tuple(str(c) for c in scores.columns)
    else:
        values, names, cell_ids = scores.values, list(scores.set_names), tuple(scores.cell_ids)

    results: list[Optional[Threshold]] = [None] * len(names)

    def fit_row(i: int) -> None:
        results[i] = derive_threshold(
            names[i], values[i], cell_ids, derive_seed(seed, i),
            min_population_fraction=min_population_fraction,
            fallback_quantile=fallback_quantile,
            max_components=max_components,
            max_iter=max_iter,
            tol=tol,
        )

    # Warning filters are process-wide; set them once here, not per worker fit.
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=ConvergenceWarning)
        if n_workers > 1 and len(names) > 1:
            with ThreadPoolExecutor(max_workers=n_workers) as executor:
                for future in [executor.submit(fit_row, i) for i in range(len(names))]:
                    future.result()
        else:
            for i in range(len(names)):
                fit_row(i)

    n_fallback = sum(t.fallback for t in results)
    log.info(
        "Thresholds selected for %d regulons (%d used the quantile fallback)",
        len(results), n_fallback,
    )
    for t in results:
        if t.fallback:
            log.warning("%s: %s", t.name, t.comment)
    return ThresholdSet(results, cell_ids)


# ── CLI ───────────────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Binarize AUCell regulon activity with per-regulon thresholds."
    )
    parser.add_argument("--config", help="Path to YAML config file.")
    parser.add_argument("--aucell-file", required=True, help="AUCell CSV (cells × regulons).")
    parser.add_argument("--output-dir", required=True, help="Output directory.")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--min-population-fraction", type=float, default=0.01)
    parser.add_argument("--fallback-quantile", type=float, default=0.99)
    parser.add_argument("--max-components", type=int, default=3)
    parser.add_argument("--n-workers", type=int, default=1)
    args = parser.parse_args()

    cfg = load_config(args.config) if args.config else {}
    bin_cfg = cfg.get("binarization", {})

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    aucell_df = load_aucell(args.aucell_file)
    thresholds = select_thresholds(
        aucell_df.T,
        seed=cfg.get("aucell_scoring", {}).get("seed", args.seed),
        min_population_fraction=bin_cfg.get("min_population_fraction", args.min_population_fraction),
        fallback_quantile=bin_cfg.get("fallback_quantile", args.fallback_quantile),
        max_components=bin_cfg.get("max_components", args.max_components),
        max_iter=bin_cfg.get("max_iter", 200),
        tol=bin_cfg.get("tol", 1e-4),
        n_workers=args.n_workers,
    )
    thresholds.to_frame().to_csv(output_dir / "thresholds.csv", index=False)
    thresholds.binary_matrix().T.to_csv(output_dir / "binary.csv")
    log.info("Thresholds saved: %s", output_dir / "thresholds.csv")


if __name__ == "__main__":
    main()
