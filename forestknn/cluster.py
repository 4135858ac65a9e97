"""Stratification of predictor grids by unsupervised classification."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import numpy as np
from sklearn.cluster import KMeans
from sklearn.preprocessing import StandardScaler

from .errors import InvalidInputError
from .grid import GridIndex, PredictorGrid

CLUSTER_LOGGER_NAME = "forestknn.cluster"
DEFAULT_CHUNK_ROWS = 256


def _get_logger() -> logging.Logger:
    return logging.getLogger(CLUSTER_LOGGER_NAME)


class Classifier(Protocol):
    """Assigns a class to each feature row.

    ``fit`` learns ``k`` classes and labels the rows it was fit on;
    ``predict`` labels further rows with the fitted classes.
    """

    def fit(self, features: np.ndarray, k: int) -> np.ndarray: ...

    def predict(self, features: np.ndarray) -> np.ndarray: ...


class KMeansClassifier:
    """k-means classifier with optional standardisation of the layers.

    Labels start at 1 so that 0 stays free as a nodata value in exports.
    """

    def __init__(
        self,
        *,
        norm: bool = True,
        n_init: int = 10,
        max_iter: int = 300,
        random_state: Optional[int] = None,
    ):
        self.norm = norm
        self.n_init = n_init
        self.max_iter = max_iter
        self.random_state = random_state
        self.scaler_: Optional[StandardScaler] = None
        self.kmeans_: Optional[KMeans] = None

    def _transform(self, features: np.ndarray) -> np.ndarray:
        if self.scaler_ is None:
            return features
        return self.scaler_.transform(features)

    def fit(self, features: np.ndarray, k: int) -> np.ndarray:
        features = np.asarray(features, dtype="float64")
        if k < 1:
            raise InvalidInputError("Number of strata must be >= 1.")
        if features.shape[0] < k:
            raise InvalidInputError(
                f"Cannot form {k} strata from {features.shape[0]} valid cells."
            )
        if self.norm:
            self.scaler_ = StandardScaler().fit(features)
        self.kmeans_ = KMeans(
            n_clusters=k,
            n_init=self.n_init,
            max_iter=self.max_iter,
            random_state=self.random_state,
        )
        labels = self.kmeans_.fit_predict(self._transform(features))
        return labels.astype(np.int64) + 1

    def predict(self, features: np.ndarray) -> np.ndarray:
        if self.kmeans_ is None:
            raise RuntimeError("Classifier has not been fit.")
        features = np.asarray(features, dtype="float64")
        if features.shape[0] == 0:
            return np.empty(0, dtype=np.int64)
        return self.kmeans_.predict(self._transform(features)).astype(np.int64) + 1


def _valid_mask(grid: PredictorGrid, chunk_rows: int) -> np.ndarray:
    mask = np.zeros((grid.height, grid.width), dtype=bool)
    for row_off in range(0, grid.height, chunk_rows):
        nrows = min(chunk_rows, grid.height - row_off)
        block = grid.read_rows(row_off, nrows)
        mask[row_off : row_off + nrows] = ~np.isnan(block).any(axis=0)
    return mask


def classify_grid(
    grid: PredictorGrid,
    strata: int,
    *,
    classifier: Optional[Classifier] = None,
    sample_size: Optional[int] = 10000,
    chunk_rows: int = DEFAULT_CHUNK_ROWS,
    random_state: Optional[int] = None,
) -> GridIndex:
    """Classify every valid cell of ``grid`` into ``strata`` classes.

    The classifier is fit on at most ``sample_size`` randomly chosen valid
    cells (all of them when ``None``) and then applied band by band, so the
    grid is never read into memory at once. Cells with any missing layer stay
    invalid in the returned :class:`GridIndex`.
    """

    if chunk_rows < 1:
        raise InvalidInputError("chunk_rows must be >= 1.")
    logger = _get_logger()
    if classifier is None:
        classifier = KMeansClassifier(random_state=random_state)

    valid = _valid_mask(grid, chunk_rows)
    rows, cols = np.nonzero(valid)
    if rows.size == 0:
        raise InvalidInputError("Predictor grid has no cells with complete values.")

    rng = np.random.default_rng(random_state)
    if sample_size is not None and rows.size > sample_size:
        pick = np.sort(rng.choice(rows.size, size=sample_size, replace=False))
        fit_rows, fit_cols = rows[pick], cols[pick]
    else:
        fit_rows, fit_cols = rows, cols

    logger.info(
        "Fitting %d strata on %d of %d valid cells.", strata, fit_rows.size, rows.size
    )
    fit_features = grid.values_at(fit_rows, fit_cols).to_numpy()
    classifier.fit(fit_features, strata)

    labels = np.full((grid.height, grid.width), np.nan, dtype="float64")
    for row_off in range(0, grid.height, chunk_rows):
        nrows = min(chunk_rows, grid.height - row_off)
        block = grid.read_rows(row_off, nrows)
        samples = block.reshape(grid.count, -1).T
        band_valid = valid[row_off : row_off + nrows].reshape(-1)
        band_labels = np.full(samples.shape[0], np.nan, dtype="float64")
        band_labels[band_valid] = classifier.predict(samples[band_valid])
        labels[row_off : row_off + nrows] = band_labels.reshape(nrows, grid.width)

    return GridIndex(labels, transform=grid.transform, crs=grid.crs)
