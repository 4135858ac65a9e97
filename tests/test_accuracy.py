"""Tests for accuracy statistics."""

from __future__ import annotations

import math

import numpy as np
import pandas as pd
import pytest

from forestknn.accuracy import (
    ACCURACY_COLUMNS,
    cross_validate,
    evaluate,
    evaluate_frame,
    format_accuracy,
)
from forestknn.config import ModelConfig
from forestknn.errors import DegenerateStatisticError, InvalidInputError
from forestknn.partition import make_partition


def test_evaluate_identical_values_is_perfect():
    values = [3.0, 5.0, 8.0, 13.0]
    table = evaluate(values, values)

    assert list(table.columns) == ACCURACY_COLUMNS
    row = table.iloc[0]
    assert row["group"] == "all"
    assert row["count"] == 4
    assert row["bias"] == 0.0
    assert row["rmse"] == 0.0
    assert row["r2"] == 1.0


def test_evaluate_statistics_match_definitions():
    reference = np.array([10.0, 20.0, 30.0, 40.0])
    estimate = np.array([12.0, 18.0, 33.0, 41.0])
    row = evaluate(reference, estimate).iloc[0]

    diff = estimate - reference
    assert row["bias"] == pytest.approx(diff.mean())
    assert row["bias_pct"] == pytest.approx(diff.mean() / 25.0 * 100)
    assert row["rmse"] == pytest.approx(math.sqrt(np.mean(diff**2)))
    assert row["rmse_pct"] == pytest.approx(row["rmse"] / 25.0 * 100)
    ss_tot = np.sum((reference - 25.0) ** 2)
    assert row["r2"] == pytest.approx(1 - np.sum(diff**2) / ss_tot)


def test_evaluate_drops_incomplete_pairs():
    table = evaluate([1.0, 2.0, np.nan, 4.0], [1.0, np.nan, 3.0, 4.0])
    assert table.iloc[0]["count"] == 2


def test_evaluate_groups_are_sorted():
    reference = [1.0, 2.0, 3.0, 4.0, 5.0, 6.0]
    estimate = [1.5, 2.5, 2.0, 4.5, 5.0, 6.5]
    groups = ["pine", "pine", "pine", "fir", "fir", "fir"]
    table = evaluate(reference, estimate, group_by=groups)

    assert table["group"].tolist() == ["fir", "pine"]
    assert table["count"].tolist() == [3, 3]


def test_evaluate_zero_mean_reference_is_degenerate():
    with pytest.raises(DegenerateStatisticError, match="relative bias"):
        evaluate([-1.0, 1.0], [0.0, 0.0])

    row = evaluate([-1.0, 1.0], [0.0, 0.0], permissive=True).iloc[0]
    assert math.isnan(row["bias_pct"])
    assert math.isnan(row["rmse_pct"])
    assert row["rmse"] == 1.0


def test_evaluate_constant_reference_is_degenerate():
    with pytest.raises(DegenerateStatisticError, match="no variance"):
        evaluate([2.0, 2.0, 2.0], [1.0, 2.0, 3.0])
    row = evaluate([2.0, 2.0, 2.0], [1.0, 2.0, 3.0], permissive=True).iloc[0]
    assert math.isnan(row["r2"])
    assert row["bias"] == 0.0


def test_evaluate_empty_group_is_degenerate():
    with pytest.raises(DegenerateStatisticError, match="no complete"):
        evaluate([np.nan, np.nan], [1.0, 2.0])


def test_evaluate_rejects_bad_input():
    with pytest.raises(InvalidInputError, match="differ in length"):
        evaluate([1.0, 2.0], [1.0])
    with pytest.raises(InvalidInputError, match="not numeric"):
        evaluate(["a", "b"], [1.0, 2.0])
    with pytest.raises(InvalidInputError):
        evaluate([1.0, 2.0], [1.0, 2.0], group_by=["a"])


def test_evaluate_frame_reports_each_response():
    reference = pd.DataFrame({"height": [10.0, 20.0, 30.0], "cover": [0.2, 0.5, 0.9]})
    estimate = pd.DataFrame({"height": [11.0, 19.0, 30.0], "cover": [0.2, 0.5, 0.9]})
    table = evaluate_frame(reference, estimate)

    assert table["response"].tolist() == ["height", "cover"]
    assert table.loc[table["response"] == "cover", "rmse"].iloc[0] == 0.0
    assert "height" in format_accuracy(table)


def test_cross_validate_predicts_every_held_out_row():
    rng = np.random.default_rng(0)
    features = pd.DataFrame({"elev": rng.uniform(0, 100, 40), "slope": rng.uniform(0, 30, 40)})
    responses = pd.DataFrame({"height": features["elev"] * 0.3 + 2})
    split = make_partition(responses["height"].to_numpy(), "kfold", 0.75, seed=0)

    table = cross_validate(
        features, responses, split, ModelConfig(method="euclidean", k=3)
    )

    assert list(table.columns) == ["fold", "row", "response", "reference", "estimate"]
    assert sorted(table["row"].tolist()) == list(range(40))
    assert table["fold"].nunique() == 4
    accuracy = evaluate(table["reference"], table["estimate"])
    assert accuracy.iloc[0]["r2"] > 0.5
