"""Stratified random sampling under a minimum-distance constraint."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio

from .cluster import Classifier, KMeansClassifier, classify_grid
from .config import SamplingConfig
from .errors import ConstraintWarning, InvalidInputError, warn
from .grid import GridIndex, PredictorGrid, as_predictor_grid

SAMPLE_LOGGER_NAME = "forestknn.sample"

DRAWING = "drawing"
ACCEPTED = "accepted"
STRATUM_EXHAUSTED = "stratum_exhausted"
MAX_ITER_EXCEEDED = "max_iter_exceeded"

PathLike = Union[str, Path]


def _get_logger() -> logging.Logger:
    return logging.getLogger(SAMPLE_LOGGER_NAME)


@dataclass
class StratumOutcome:
    """How sampling ended for one stratum.

    ``state`` is ``accepted`` when the target was reached, otherwise the
    terminal state that stopped the draws.
    """

    stratum: int
    target: int
    selected: int
    attempts: int
    state: str

    @property
    def terminated_early(self) -> bool:
        return self.state != ACCEPTED


@dataclass
class SampleSet:
    rows: np.ndarray
    cols: np.ndarray
    x: np.ndarray
    y: np.ndarray
    strata: np.ndarray
    allocation: Dict[int, int]
    outcomes: List[StratumOutcome]
    n_requested: int
    mindist: float
    include_xy: bool = True
    crs: Optional[object] = None
    warnings: List[str] = field(default_factory=list)

    def __len__(self) -> int:
        return int(self.rows.shape[0])

    @property
    def terminated_early(self) -> np.ndarray:
        """Per-sample flag: the sample's stratum stopped before its target."""
        early = {o.stratum for o in self.outcomes if o.terminated_early}
        return np.isin(self.strata, list(early))

    def counts(self) -> Dict[int, int]:
        ids, counts = np.unique(self.strata, return_counts=True)
        return {int(i): int(c) for i, c in zip(ids, counts)}

    def to_frame(self) -> pd.DataFrame:
        data = {
            "row": self.rows,
            "col": self.cols,
            "stratum": self.strata,
        }
        if self.include_xy:
            data["x"] = self.x
            data["y"] = self.y
        return pd.DataFrame(data)

    def to_geodataframe(self) -> gpd.GeoDataFrame:
        geometry = gpd.points_from_xy(self.x, self.y, crs=self.crs)
        return gpd.GeoDataFrame(self.to_frame(), geometry=geometry, crs=self.crs)

    def to_file(self, path: PathLike, driver: str = "GPKG") -> Path:
        out_path = Path(path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        self.to_geodataframe().to_file(out_path, driver=driver, index=False)
        _get_logger().info("Wrote %d sample points to %s.", len(self), out_path)
        return out_path


def allocate_strata(
    frequencies: Dict[int, int], n: int, rng: np.random.Generator
) -> Dict[int, int]:
    """Allocate ``n`` samples to strata in proportion to their frequency.

    Each stratum gets ``floor(fraction * n)``; the residual is handed out one
    unit at a time to uniformly drawn strata. Draws are with replacement, so a
    stratum may receive more than one extra unit.
    """

    if n <= 0:
        raise InvalidInputError("Sample size n must be > 0.")
    ids = sorted(int(s) for s in frequencies)
    total = sum(int(frequencies[s]) for s in ids)
    if not ids or total <= 0:
        raise InvalidInputError("Grid has no valid cells to sample from.")

    allocation = {s: (int(frequencies[s]) * n) // total for s in ids}
    residual = n - sum(allocation.values())
    for _ in range(residual):
        allocation[ids[int(rng.integers(len(ids)))]] += 1
    return allocation


def _processing_order(allocation: Dict[int, int]) -> List[int]:
    return sorted(allocation, key=lambda s: (-allocation[s], s))


class _AcceptedPoints:
    """Coordinates of accepted samples across all strata."""

    def __init__(self, capacity: int):
        self.x = np.empty(capacity, dtype="float64")
        self.y = np.empty(capacity, dtype="float64")
        self.size = 0

    def far_enough(self, x: float, y: float, mindist: float) -> bool:
        if mindist <= 0 or self.size == 0:
            return True
        dist = np.hypot(self.x[: self.size] - x, self.y[: self.size] - y)
        return bool(dist.min() >= mindist)

    def add(self, x: float, y: float) -> None:
        self.x[self.size] = x
        self.y[self.size] = y
        self.size += 1


def _sample_stratum(
    grid: GridIndex,
    stratum: int,
    target: int,
    accepted: _AcceptedPoints,
    *,
    mindist: float,
    max_iter: float,
    rng: np.random.Generator,
) -> Tuple[List[int], List[int], StratumOutcome]:
    pool_rows, pool_cols = grid.cells(stratum)
    pool_x, pool_y = grid.xy(pool_rows, pool_cols)
    remaining = np.arange(pool_rows.size)
    size = remaining.size
    limit = max_iter * target

    rows: List[int] = []
    cols: List[int] = []
    attempts = 0
    state = DRAWING
    while state == DRAWING:
        if len(rows) >= target:
            state = ACCEPTED
        elif size == 0:
            state = STRATUM_EXHAUSTED
        elif attempts >= limit:
            state = MAX_ITER_EXCEEDED
        else:
            slot = int(rng.integers(size))
            cand = remaining[slot]
            attempts += 1
            if accepted.far_enough(pool_x[cand], pool_y[cand], mindist):
                accepted.add(pool_x[cand], pool_y[cand])
                rows.append(int(pool_rows[cand]))
                cols.append(int(pool_cols[cand]))
                size -= 1
                remaining[slot] = remaining[size]

    return rows, cols, StratumOutcome(
        stratum=stratum,
        target=target,
        selected=len(rows),
        attempts=attempts,
        state=state,
    )


def sample(
    grid: GridIndex,
    n: int,
    *,
    num_strata: Optional[int] = None,
    mindist: float = 0.0,
    max_iter: float = 30,
    seed: Optional[Union[int, np.random.Generator]] = None,
    include_xy: bool = True,
) -> SampleSet:
    """Draw ``n`` cells from ``grid`` stratified by stratum id.

    Strata are processed in descending order of allocation (ties by stratum
    id). Within a stratum, candidates are drawn uniformly from the cells not
    yet selected and accepted only when at least ``mindist`` away from every
    sample accepted so far in any stratum. A stratum stops early, with a
    :class:`ConstraintWarning`, when its pool runs out or after
    ``max_iter * target`` draws. The result may therefore hold fewer than
    ``n`` samples; it is never padded.
    """

    logger = _get_logger()
    if n is None or int(n) != n or n <= 0:
        raise InvalidInputError("Sample size n must be a positive integer.")
    n = int(n)
    if mindist < 0:
        raise InvalidInputError("mindist must be non-negative.")
    if max_iter <= 0:
        raise InvalidInputError("max_iter must be > 0.")

    rng = seed if isinstance(seed, np.random.Generator) else np.random.default_rng(seed)
    frequencies = grid.frequencies()
    messages: List[str] = []

    if num_strata is not None and num_strata != len(frequencies):
        message = (
            f"Requested {num_strata} strata but the grid holds {len(frequencies)}."
        )
        warn(logger, message, ConstraintWarning)
        messages.append(message)

    allocation = allocate_strata(frequencies, n, rng)
    accepted = _AcceptedPoints(n)
    all_rows: List[int] = []
    all_cols: List[int] = []
    all_strata: List[int] = []
    outcomes: List[StratumOutcome] = []

    for stratum in _processing_order(allocation):
        target = allocation[stratum]
        if target == 0:
            continue
        logger.info("Stratum %d: %d samples to select.", stratum, target)
        rows, cols, outcome = _sample_stratum(
            grid,
            stratum,
            target,
            accepted,
            mindist=mindist,
            max_iter=max_iter,
            rng=rng,
        )
        outcomes.append(outcome)
        all_rows.extend(rows)
        all_cols.extend(cols)
        all_strata.extend([stratum] * len(rows))

        if outcome.state == STRATUM_EXHAUSTED:
            message = (
                f"All candidate cells of stratum {stratum} have been selected; "
                f"only {outcome.selected} of {target} samples could be drawn."
            )
        elif outcome.state == MAX_ITER_EXCEEDED:
            message = (
                f"Exceeded maximum number of draws ({outcome.attempts}) for stratum "
                f"{stratum}; selected {outcome.selected} of {target} samples."
            )
        else:
            continue
        warn(logger, message, ConstraintWarning)
        messages.append(message)

    if len(all_rows) < n:
        message = f"Selected {len(all_rows)} of {n} requested samples."
        warn(logger, message, ConstraintWarning)
        messages.append(message)

    rows_arr = np.asarray(all_rows, dtype=np.int64)
    cols_arr = np.asarray(all_cols, dtype=np.int64)
    xs, ys = grid.xy(rows_arr, cols_arr)
    return SampleSet(
        rows=rows_arr,
        cols=cols_arr,
        x=xs,
        y=ys,
        strata=np.asarray(all_strata, dtype=np.int64),
        allocation=allocation,
        outcomes=outcomes,
        n_requested=n,
        mindist=float(mindist),
        include_xy=include_xy,
        crs=grid.crs,
        warnings=messages,
    )


def get_sample(
    predictors,
    config: SamplingConfig,
    *,
    classifier: Optional[Classifier] = None,
    layer_names: Optional[List[str]] = None,
    cluster_out: Optional[PathLike] = None,
    samples_out: Optional[PathLike] = None,
) -> Tuple[SampleSet, GridIndex]:
    """Stratify ``predictors`` into ``config.strata`` clusters and sample them.

    ``predictors`` may be a :class:`PredictorGrid`, raster path(s) or an array.
    ``layer_names`` names the layers of array or raster input; for an
    existing grid it selects the layers used for clustering. By default
    strata come from k-means on standardised layers, fit on
    ``config.cluster_sample_size`` random cells.
    The clustered grid and sample points are optionally written to disk.
    """

    if config.n is None:
        raise InvalidInputError("SamplingConfig.n must be set.")
    grid: PredictorGrid = as_predictor_grid(predictors, layer_names=layer_names)
    if layer_names is not None and isinstance(predictors, PredictorGrid):
        grid = grid.select(layer_names)

    if classifier is None:
        classifier = KMeansClassifier(
            norm=config.norm, n_init=config.n_init, random_state=config.seed
        )
    strata_grid = classify_grid(
        grid,
        config.strata,
        classifier=classifier,
        sample_size=config.cluster_sample_size,
        random_state=config.seed,
    )
    if cluster_out is not None:
        strata_grid.to_raster(cluster_out)

    samples = sample(
        strata_grid,
        config.n,
        num_strata=config.strata,
        mindist=config.mindist,
        max_iter=config.max_iter,
        seed=config.seed,
        include_xy=config.include_xy,
    )
    if samples_out is not None:
        samples.to_file(samples_out)
    return samples, strata_grid


def extract_at_points(
    grid: PredictorGrid, points: Union[SampleSet, gpd.GeoDataFrame]
) -> pd.DataFrame:
    """Predictor values under each sample point, in sample order.

    Point layers are located on the grid through its transform; points
    outside the grid raise :class:`InvalidInputError`.
    """

    if isinstance(points, SampleSet):
        return grid.values_at(points.rows, points.cols)

    if points.crs is not None and grid.crs is not None and points.crs != grid.crs:
        points = points.to_crs(grid.crs)
    if len(points) == 0:
        return pd.DataFrame(columns=grid.layer_names, dtype="float64")
    rows, cols = rasterio.transform.rowcol(
        grid.transform, points.geometry.x.to_numpy(), points.geometry.y.to_numpy()
    )
    return grid.values_at(np.asarray(rows), np.asarray(cols))
