"""k-nearest-neighbour imputation models."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import joblib
import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestRegressor
from sklearn.preprocessing import StandardScaler

from .config import ModelConfig
from .errors import InvalidInputError, SchemaMismatchError

MODEL_LOGGER_NAME = "forestknn.model"
RANDOM_FOREST = "randomForest"
EUCLIDEAN = "euclidean"
METHODS = (RANDOM_FOREST, EUCLIDEAN)
ESTIMATES = ("closest", "mean", "dstWeighted")

PathLike = Union[str, Path]
FeatureLike = Union[pd.DataFrame, np.ndarray]


def _get_logger() -> logging.Logger:
    return logging.getLogger(MODEL_LOGGER_NAME)


def build_training_table(
    predictors: pd.DataFrame, responses: pd.DataFrame
) -> pd.DataFrame:
    """Join predictors and responses by row position.

    Both tables must describe the same samples in the same order; no key
    based join is performed.
    """

    predictors = pd.DataFrame(predictors)
    responses = pd.DataFrame(responses)
    if len(predictors) != len(responses):
        raise InvalidInputError(
            f"Predictor table has {len(predictors)} rows but response table has "
            f"{len(responses)}; they must match row for row."
        )
    overlap = sorted(set(predictors.columns) & set(responses.columns))
    if overlap:
        raise InvalidInputError(
            "Columns present in both predictors and responses: " + ", ".join(map(str, overlap))
        )
    return pd.concat(
        [predictors.reset_index(drop=True), responses.reset_index(drop=True)], axis=1
    )


def _numeric_frame(data, names: Optional[Sequence[str]], what: str) -> pd.DataFrame:
    if isinstance(data, pd.Series):
        frame = data.to_frame()
    elif isinstance(data, pd.DataFrame):
        frame = data
    else:
        arr = np.asarray(data)
        if arr.ndim == 1:
            arr = arr[:, np.newaxis]
        if names is None:
            raise InvalidInputError(f"Names are required for array {what}.")
        frame = pd.DataFrame(arr, columns=list(names))
    if frame.columns.duplicated().any():
        raise InvalidInputError(f"Duplicate column names in {what}.")
    non_numeric = [
        str(col) for col in frame.columns if not pd.api.types.is_numeric_dtype(frame[col])
    ]
    if non_numeric:
        raise InvalidInputError(
            f"Non-numeric {what} column(s): {', '.join(non_numeric)}."
        )
    return frame


class NearnessModel:
    """Nearest-neighbour imputation over a fitted nearness measure.

    With ``method="randomForest"`` a random forest regressor is grown on the
    responses and the nearness of two observations is the fraction of trees
    in which they share a leaf. With ``method="euclidean"`` nearness is the
    Euclidean distance between standardised predictors.

    ``predict`` returns response estimates together with the training-row
    positions (0-based) of the ``k`` donors, nearest first; ties go to the
    lower training row. Each output row depends only on its input row.
    """

    def __init__(
        self,
        method: str = RANDOM_FOREST,
        k: int = 1,
        estimate: str = "mean",
        *,
        n_trees: int = 500,
        max_features: Optional[Union[int, float, str]] = None,
        n_jobs: int = 1,
        random_state: Optional[int] = None,
    ):
        if method not in METHODS:
            raise InvalidInputError(
                f"method must be one of {', '.join(METHODS)}; got '{method}'."
            )
        if estimate not in ESTIMATES:
            raise InvalidInputError(
                f"estimate must be one of {', '.join(ESTIMATES)}; got '{estimate}'."
            )
        if k < 1:
            raise InvalidInputError("k must be >= 1.")
        if n_trees < 1:
            raise InvalidInputError("n_trees must be >= 1.")
        self.method = method
        self.k = int(k)
        self.estimate = estimate
        self.n_trees = int(n_trees)
        self.max_features = max_features
        self.n_jobs = n_jobs
        self.random_state = random_state

        self.feature_names_: Optional[List[str]] = None
        self.response_names_: Optional[List[str]] = None
        self.train_index_: Optional[pd.Index] = None
        self.train_responses_: Optional[np.ndarray] = None
        self.forest_: Optional[RandomForestRegressor] = None
        self.train_leaves_: Optional[np.ndarray] = None
        self.scaler_: Optional[StandardScaler] = None
        self.train_scaled_: Optional[np.ndarray] = None

    @classmethod
    def from_config(cls, config: ModelConfig) -> "NearnessModel":
        return cls(
            method=config.method,
            k=config.k,
            estimate=config.estimate,
            n_trees=config.n_trees,
            max_features=config.max_features,
            n_jobs=config.n_jobs,
            random_state=config.seed,
        )

    @property
    def is_fitted(self) -> bool:
        return self.feature_names_ is not None

    @property
    def n_train(self) -> int:
        self._require_fitted()
        assert self.train_responses_ is not None
        return int(self.train_responses_.shape[0])

    def _require_fitted(self) -> None:
        if not self.is_fitted:
            raise RuntimeError("Model has not been fit.")

    def fit(
        self,
        features: FeatureLike,
        responses,
        *,
        feature_names: Optional[Sequence[str]] = None,
        response_names: Optional[Sequence[str]] = None,
    ) -> "NearnessModel":
        """Fit on a training table: ``features`` and ``responses`` row for row."""

        logger = _get_logger()
        X = _numeric_frame(features, feature_names, "features")
        Y = _numeric_frame(responses, response_names, "responses")
        if len(X) != len(Y):
            raise InvalidInputError(
                f"features have {len(X)} rows but responses have {len(Y)}."
            )
        if len(X) < 1:
            raise InvalidInputError("Training table is empty.")
        if X.isna().to_numpy().any() or Y.isna().to_numpy().any():
            raise InvalidInputError("Training table contains missing values.")
        if self.k > len(X):
            raise InvalidInputError(
                f"k={self.k} exceeds the number of training rows ({len(X)})."
            )

        X_arr = X.to_numpy(dtype="float64")
        Y_arr = Y.to_numpy(dtype="float64")
        self.feature_names_ = [str(col) for col in X.columns]
        self.response_names_ = [str(col) for col in Y.columns]
        self.train_index_ = Y.index.copy()
        self.train_responses_ = Y_arr

        logger.info(
            "Fitting %s nearness on %d training rows (%d features, %d responses).",
            self.method,
            X_arr.shape[0],
            X_arr.shape[1],
            Y_arr.shape[1],
        )
        if self.method == RANDOM_FOREST:
            forest = RandomForestRegressor(
                n_estimators=self.n_trees,
                max_features=self.max_features if self.max_features is not None else 1.0,
                n_jobs=self.n_jobs,
                random_state=self.random_state,
            )
            target = Y_arr[:, 0] if Y_arr.shape[1] == 1 else Y_arr
            forest.fit(X_arr, target)
            self.forest_ = forest
            self.train_leaves_ = forest.apply(X_arr)
            self._log_importances()
        else:
            self.scaler_ = StandardScaler().fit(X_arr)
            self.train_scaled_ = self.scaler_.transform(X_arr)
        return self

    def _log_importances(self) -> None:
        importances = self.feature_importances()
        if importances is None:
            return
        lines = ["Feature importance (sorted):"]
        for name, value in importances:
            lines.append(f"{name}: {value:.6f}")
        _get_logger().debug("\n".join(lines))

    def feature_importances(self) -> Optional[List[Tuple[str, float]]]:
        if self.forest_ is None or self.feature_names_ is None:
            return None
        pairs = list(zip(self.feature_names_, self.forest_.feature_importances_))
        pairs.sort(key=lambda pair: pair[1], reverse=True)
        return [(name, float(value)) for name, value in pairs]

    def _align_features(self, features: FeatureLike) -> np.ndarray:
        assert self.feature_names_ is not None
        expected = self.feature_names_
        if isinstance(features, pd.DataFrame):
            columns = [str(col) for col in features.columns]
            if len(set(columns)) != len(columns):
                raise SchemaMismatchError("Duplicate feature columns at prediction time.")
            missing = [name for name in expected if name not in columns]
            extra = [name for name in columns if name not in expected]
            if missing or extra:
                parts = []
                if missing:
                    parts.append("missing " + ", ".join(missing))
                if extra:
                    parts.append("unexpected " + ", ".join(extra))
                raise SchemaMismatchError(
                    "Feature columns do not match the fitted model: " + "; ".join(parts)
                )
            frame = features.copy()
            frame.columns = columns
            arr = frame[expected].to_numpy(dtype="float64")
        else:
            arr = np.asarray(features, dtype="float64")
            if arr.ndim == 1:
                arr = arr[np.newaxis, :]
            if arr.ndim != 2 or arr.shape[1] != len(expected):
                raise SchemaMismatchError(
                    f"Model expects {len(expected)} features "
                    f"({', '.join(expected)}), got array of shape {arr.shape}."
                )
        if np.isnan(arr).any():
            raise InvalidInputError("Features contain missing values.")
        return arr

    def resolve_k(self, k: Optional[int]) -> int:
        k = self.k if k is None else int(k)
        if k < 1 or k > self.n_train:
            raise InvalidInputError(
                f"k must be between 1 and {self.n_train}; got {k}."
            )
        return k

    def _distances(self, X: np.ndarray) -> np.ndarray:
        if self.method == RANDOM_FOREST:
            assert self.forest_ is not None and self.train_leaves_ is not None
            leaves = self.forest_.apply(X)
            shared = np.zeros((X.shape[0], self.train_leaves_.shape[0]), dtype=np.int32)
            for tree in range(leaves.shape[1]):
                shared += leaves[:, tree, np.newaxis] == self.train_leaves_[np.newaxis, :, tree]
            return 1.0 - shared / float(leaves.shape[1])

        assert self.scaler_ is not None and self.train_scaled_ is not None
        scaled = self.scaler_.transform(X)
        sq = np.zeros((X.shape[0], self.train_scaled_.shape[0]), dtype="float64")
        for col in range(scaled.shape[1]):
            diff = scaled[:, col, np.newaxis] - self.train_scaled_[np.newaxis, :, col]
            sq += diff * diff
        return np.sqrt(sq)

    def kneighbors(self, features: FeatureLike, k: Optional[int] = None) -> Tuple[np.ndarray, np.ndarray]:
        """Distances and training-row ids of the ``k`` nearest donors per row."""
        self._require_fitted()
        k = self.resolve_k(k)
        X = self._align_features(features)
        if X.shape[0] == 0:
            return np.empty((0, k), dtype="float64"), np.empty((0, k), dtype=np.int64)
        dist = self._distances(X)
        order = np.argsort(dist, axis=1, kind="stable")[:, :k]
        return np.take_along_axis(dist, order, axis=1), order.astype(np.int64)

    def predict(self, features: FeatureLike, k: Optional[int] = None) -> Tuple[np.ndarray, np.ndarray]:
        """Estimate responses for ``features``.

        Returns ``(estimates, neighbor_ids)`` with shapes ``(rows, responses)``
        and ``(rows, k)``.
        """

        dist, ids = self.kneighbors(features, k)
        assert self.train_responses_ is not None
        Y = self.train_responses_
        if ids.shape[0] == 0:
            return np.empty((0, Y.shape[1]), dtype="float64"), ids

        if self.estimate == "closest" or ids.shape[1] == 1:
            return Y[ids[:, 0]].copy(), ids

        total = np.zeros((ids.shape[0], Y.shape[1]), dtype="float64")
        if self.estimate == "mean":
            for rank in range(ids.shape[1]):
                total += Y[ids[:, rank]]
            return total / ids.shape[1], ids

        weight_sum = np.zeros((ids.shape[0], 1), dtype="float64")
        for rank in range(ids.shape[1]):
            weight = 1.0 / (1.0 + dist[:, rank, np.newaxis])
            total += weight * Y[ids[:, rank]]
            weight_sum += weight
        return total / weight_sum, ids

    def predict_frame(self, features: FeatureLike, k: Optional[int] = None) -> pd.DataFrame:
        """Estimates and donor ids as a DataFrame (``nn1``, ``nn2`` ...)."""
        estimates, ids = self.predict(features, k)
        assert self.response_names_ is not None
        frame = pd.DataFrame(estimates, columns=self.response_names_)
        for rank in range(ids.shape[1]):
            frame[neighbor_band_name(rank + 1)] = ids[:, rank]
        if isinstance(features, pd.DataFrame):
            frame.index = features.index
        return frame

    def donor_labels(self, neighbor_ids: np.ndarray) -> np.ndarray:
        """Map training-row positions back to the response table's index labels."""
        self._require_fitted()
        assert self.train_index_ is not None
        return np.asarray(self.train_index_)[np.asarray(neighbor_ids, dtype=np.int64)]

    def save(self, path: PathLike) -> Path:
        self._require_fitted()
        out_path = Path(path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(self, out_path)
        _get_logger().info("Model saved to %s", out_path)
        return out_path

    @classmethod
    def load(cls, path: PathLike) -> "NearnessModel":
        model = joblib.load(path)
        if not isinstance(model, cls):
            raise InvalidInputError(
                f"{path} does not contain a {cls.__name__} (found {type(model).__name__})."
            )
        return model


def neighbor_band_name(rank: int) -> str:
    return f"nn{rank}"


def fit_model(
    features: FeatureLike,
    responses,
    config: Optional[ModelConfig] = None,
) -> NearnessModel:
    """Fit a :class:`NearnessModel` with options from ``config``."""
    model = NearnessModel.from_config(config or ModelConfig())
    return model.fit(features, responses)
