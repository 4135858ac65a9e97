"""Tests for training/testing partitions."""

from __future__ import annotations

import numpy as np
import pytest

from forestknn.config import PartitionConfig
from forestknn.errors import ConstraintWarning, InvalidInputError
from forestknn.partition import make_partition, partition, partition_from_config


def test_kfold_builds_five_folds_covering_all_rows():
    labels = np.arange(1, 101)
    split = make_partition(labels, "kfold", train_fraction=0.8, seed=0)

    assert list(split.folds) == ["Fold1", "Fold2", "Fold3", "Fold4", "Fold5"]
    tests = []
    for _, fold in split:
        assert fold.train.size == 80
        assert fold.test.size == 20
        assert np.intersect1d(fold.train, fold.test).size == 0
        tests.append(fold.test)
    assert np.sort(np.concatenate(tests)).tolist() == list(range(100))


def test_partition_returns_train_or_test_indices():
    labels = np.arange(1, 101)
    train = partition(labels, "kfold", 0.8, seed=0)
    test = partition(labels, "kfold", 0.8, return_train=False, seed=0)
    for fold_id in train:
        assert np.union1d(train[fold_id], test[fold_id]).tolist() == list(range(100))


def test_random_holdout_draws_rounded_fraction():
    split = make_partition(np.arange(20), "random_holdout", train_fraction=0.75, seed=1)
    fold = split.folds["Fold1"]
    assert len(split) == 1
    assert fold.train.size == 15
    assert fold.test.size == 5
    assert np.union1d(fold.train, fold.test).tolist() == list(range(20))


def test_strategy_names_accept_spaces():
    split = make_partition(np.arange(10), "random holdout", seed=0)
    assert split.strategy == "random_holdout"


def test_group_holdout_draws_fraction_of_each_quantile_group():
    labels = np.arange(1, 101, dtype="float64")
    split = make_partition(labels, "group_holdout", 0.75, num_groups=5, seed=0)
    train = split.folds["Fold1"].train

    assert train.size == 75
    for lower in range(0, 100, 20):
        assert np.sum((train >= lower) & (train < lower + 20)) == 15


def test_group_holdout_uses_categories_for_text_labels():
    labels = np.array(["oak"] * 4 + ["pine"] * 6)
    train = make_partition(labels, "group_holdout", 0.5, seed=0).folds["Fold1"].train
    assert np.sum(train < 4) == 2
    assert np.sum(train >= 4) == 3


def test_group_holdout_clamps_groups_to_distinct_values():
    labels = np.array([1.0, 1.0, 2.0, 2.0])
    with pytest.warns(ConstraintWarning, match="num_groups=5"):
        split = make_partition(labels, "group_holdout", 0.5, num_groups=5, seed=0)
    assert split.folds["Fold1"].train.size == 2


def test_partition_is_reproducible_with_seed():
    labels = np.arange(50)
    first = partition(labels, "group_holdout", seed=11)
    second = partition(labels, "group_holdout", seed=11)
    assert first["Fold1"].tolist() == second["Fold1"].tolist()


def test_partition_rejects_unknown_strategy_and_fractions():
    with pytest.raises(InvalidInputError, match="Unknown partition strategy"):
        make_partition(np.arange(10), "bootstrap")
    with pytest.raises(InvalidInputError):
        make_partition(np.arange(10), "random_holdout", train_fraction=1.0)
    with pytest.raises(InvalidInputError, match="Cannot build"):
        make_partition(np.arange(5), "kfold", train_fraction=0.9)
    with pytest.raises(InvalidInputError, match="missing"):
        make_partition(np.array([1.0, np.nan, 2.0]), "random_holdout")


def test_partition_from_config():
    config = PartitionConfig(strategy="kfold", train_fraction=0.75, seed=3)
    split = partition_from_config(np.arange(40), config)
    assert len(split) == 4
