"""Accuracy statistics between reference and estimated values."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from .config import ModelConfig
from .errors import DegenerateStatisticError, InvalidInputError
from .model import NearnessModel
from .partition import Partition

ACCURACY_LOGGER_NAME = "forestknn.accuracy"
ACCURACY_COLUMNS = ["group", "count", "r2", "rmse", "rmse_pct", "bias", "bias_pct"]


def _get_logger() -> logging.Logger:
    return logging.getLogger(ACCURACY_LOGGER_NAME)


def _as_numeric(values, name: str) -> np.ndarray:
    arr = np.asarray(values)
    if arr.ndim != 1:
        raise InvalidInputError(f"{name} must be one-dimensional.")
    if not (np.issubdtype(arr.dtype, np.number) and not np.issubdtype(arr.dtype, np.bool_)):
        try:
            arr = pd.to_numeric(pd.Series(values), errors="raise").to_numpy()
        except (TypeError, ValueError) as exc:
            raise InvalidInputError(f"{name} values are not numeric.") from exc
    return arr.astype("float64")


def _degenerate(message: str, permissive: bool) -> float:
    if not permissive:
        raise DegenerateStatisticError(message)
    return float("nan")


def _calc_error(
    reference: np.ndarray, estimate: np.ndarray, *, label: str, permissive: bool
) -> Dict[str, float]:
    count = int(reference.size)
    if count == 0:
        nan = _degenerate(f"Group '{label}' has no complete reference/estimate pairs.", permissive)
        return {"count": 0, "r2": nan, "rmse": nan, "rmse_pct": nan, "bias": nan, "bias_pct": nan}

    diff = estimate - reference
    bias = float(diff.mean())
    rmse = float(np.sqrt(np.mean(diff * diff)))
    ref_mean = float(reference.mean())

    if ref_mean == 0:
        bias_pct = _degenerate(
            f"Mean reference of group '{label}' is zero; relative bias is undefined.",
            permissive,
        )
        rmse_pct = float("nan")
    else:
        bias_pct = bias / ref_mean * 100
        rmse_pct = rmse / abs(ref_mean) * 100

    ss_tot = float(np.sum((reference - ref_mean) ** 2))
    if ss_tot == 0:
        r2 = _degenerate(
            f"Reference values of group '{label}' have no variance; R2 is undefined.",
            permissive,
        )
    else:
        r2 = 1 - float(np.sum(diff * diff)) / ss_tot

    return {
        "count": count,
        "r2": r2,
        "rmse": rmse,
        "rmse_pct": rmse_pct,
        "bias": bias,
        "bias_pct": bias_pct,
    }


def evaluate(
    reference: Sequence[float],
    estimate: Sequence[float],
    group_by: Optional[Sequence] = None,
    *,
    permissive: bool = False,
) -> pd.DataFrame:
    """Bias, RMSE and R2 of ``estimate`` against ``reference``.

    One row per group (sorted), or a single ``"all"`` row without
    ``group_by``. Pairs missing on either side, or with a missing group, are
    left out of every statistic. A zero mean reference or zero reference
    variance raises :class:`DegenerateStatisticError` unless ``permissive``,
    in which case the affected statistics are NaN.

    - bias = mean(estimate - reference), bias_pct = bias / mean(reference) * 100
    - rmse = sqrt(mean((estimate - reference)^2)), rmse_pct = rmse / |mean(reference)| * 100
    - r2 = 1 - SS_res / SS_tot
    """

    ref = _as_numeric(reference, "reference")
    est = _as_numeric(estimate, "estimate")
    if ref.shape != est.shape:
        raise InvalidInputError(
            f"reference ({ref.size}) and estimate ({est.size}) differ in length."
        )
    complete = ~np.isnan(ref) & ~np.isnan(est)

    rows: List[Dict[str, object]] = []
    if group_by is None:
        stats = _calc_error(ref[complete], est[complete], label="all", permissive=permissive)
        rows.append({"group": "all", **stats})
    else:
        groups = pd.Series(np.asarray(group_by, dtype=object))
        if len(groups) != ref.size:
            raise InvalidInputError(
                f"group_by ({len(groups)}) and reference ({ref.size}) differ in length."
            )
        complete &= ~groups.isna().to_numpy()
        levels = pd.Categorical(groups[complete]).categories
        for level in levels:
            mask = complete & (groups == level).to_numpy()
            stats = _calc_error(ref[mask], est[mask], label=str(level), permissive=permissive)
            rows.append({"group": level, **stats})

    return pd.DataFrame(rows, columns=ACCURACY_COLUMNS)


def evaluate_frame(
    reference: pd.DataFrame,
    estimate: pd.DataFrame,
    group_by: Optional[Sequence] = None,
    *,
    permissive: bool = False,
) -> pd.DataFrame:
    """Evaluate every response column present in both frames, row for row."""
    if len(reference) != len(estimate):
        raise InvalidInputError("reference and estimate tables differ in length.")
    columns = [col for col in reference.columns if col in estimate.columns]
    if not columns:
        raise InvalidInputError("reference and estimate share no response columns.")
    tables = []
    for col in columns:
        table = evaluate(
            reference[col].to_numpy(),
            estimate[col].to_numpy(),
            group_by=group_by,
            permissive=permissive,
        )
        table.insert(0, "response", col)
        tables.append(table)
    return pd.concat(tables, ignore_index=True)


def cross_validate(
    features: pd.DataFrame,
    responses: pd.DataFrame,
    split: Partition,
    config: Optional[ModelConfig] = None,
) -> pd.DataFrame:
    """Fit one model per fold and predict its held-out rows.

    Returns a long table with columns ``fold``, ``row``, ``response``,
    ``reference`` and ``estimate``; ``row`` is the position in the input
    tables.
    """

    features = pd.DataFrame(features).reset_index(drop=True)
    responses = pd.DataFrame(responses).reset_index(drop=True)
    if len(features) != len(responses):
        raise InvalidInputError("features and responses differ in length.")

    logger = _get_logger()
    config = config or ModelConfig()
    frames = []
    for fold_id, fold in split:
        if fold.test.size == 0:
            logger.info("%s has no held-out rows; skipping.", fold_id)
            continue
        model = NearnessModel.from_config(config).fit(
            features.iloc[fold.train], responses.iloc[fold.train]
        )
        estimates, _ = model.predict(features.iloc[fold.test])
        for col_idx, name in enumerate(model.response_names_ or []):
            frames.append(
                pd.DataFrame(
                    {
                        "fold": fold_id,
                        "row": fold.test,
                        "response": name,
                        "reference": responses[name].to_numpy()[fold.test],
                        "estimate": estimates[:, col_idx],
                    }
                )
            )
        logger.info(
            "%s: trained on %d rows, predicted %d held-out rows.",
            fold_id,
            fold.train.size,
            fold.test.size,
        )
    if not frames:
        raise InvalidInputError("Partition has no held-out rows to evaluate.")
    return pd.concat(frames, ignore_index=True)


def format_accuracy(table: pd.DataFrame) -> str:
    return table.to_string(index=False, float_format=lambda value: f"{value:.3f}")
