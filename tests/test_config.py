"""Tests for configuration loading and logging setup."""

from __future__ import annotations

import json
import logging

import pytest

from forestknn.config import (
    ForestKnnConfig,
    ModelConfig,
    config_from_dict,
    configure_logging,
    load_config,
)
from forestknn.errors import InvalidInputError


def test_defaults_are_documented_values():
    config = ForestKnnConfig()
    assert config.sampling.strata == 5
    assert config.sampling.max_iter == 30
    assert config.partition.strategy == "group_holdout"
    assert config.partition.train_fraction == 0.75
    assert config.model == ModelConfig()
    assert config.model.estimate == "mean"
    assert config.impute.executor == "process"


def test_load_config_reads_sections(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "sampling": {"n": 200, "mindist": 30.0, "seed": 4},
                "model": {"method": "euclidean", "k": 5},
                "impute": {"parallel_workers": 4},
            }
        )
    )
    config = load_config(path)

    assert config.sampling.n == 200
    assert config.sampling.mindist == 30.0
    assert config.sampling.strata == 5
    assert config.model.k == 5
    assert config.impute.parallel_workers == 4
    assert config.to_dict()["model"]["method"] == "euclidean"


def test_unknown_keys_are_rejected():
    with pytest.raises(InvalidInputError, match="mindistance"):
        config_from_dict({"sampling": {"mindistance": 5}})
    with pytest.raises(InvalidInputError, match="plotting"):
        config_from_dict({"plotting": {}})
    with pytest.raises(InvalidInputError):
        config_from_dict({"model": [1, 2]})


@pytest.mark.parametrize(
    ("verbosity", "level"),
    [(0, logging.WARNING), (1, logging.INFO), (2, logging.DEBUG)],
)
def test_configure_logging_levels(verbosity, level):
    logger = configure_logging(verbosity)
    assert logger.name == "forestknn"
    assert logger.level == level
