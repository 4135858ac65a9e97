"""Configuration objects for sampling, partitioning, modelling and imputation."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from .errors import InvalidInputError

PathLike = Union[str, Path]
PACKAGE_LOGGER_NAME = "forestknn"


@dataclass
class SamplingConfig:
    """Options for stratified sampling.

    ``max_iter`` is multiplied by the number of samples to draw in a stratum
    to bound the number of attempted draws. ``cluster_sample_size`` and
    ``n_init`` only apply when strata are derived with k-means.
    """

    strata: int = 5
    n: Optional[int] = None
    mindist: float = 0.0
    max_iter: float = 30
    include_xy: bool = True
    norm: bool = True
    cluster_sample_size: int = 10000
    n_init: int = 10
    seed: Optional[int] = None


@dataclass
class PartitionConfig:
    strategy: str = "group_holdout"
    train_fraction: float = 0.75
    num_groups: int = 5
    seed: Optional[int] = None


@dataclass
class ModelConfig:
    """Options for the nearness model.

    ``method`` selects how nearness is measured (``randomForest`` or
    ``euclidean``); ``estimate`` how the ``k`` donors are combined
    (``closest``, ``mean`` or ``dstWeighted``).
    """

    method: str = "randomForest"
    k: int = 1
    estimate: str = "mean"
    n_trees: int = 500
    max_features: Optional[Union[int, float, str]] = None
    n_jobs: int = 1
    seed: Optional[int] = None


@dataclass
class ImputeConfig:
    chunk_rows: Optional[int] = None
    parallel_workers: int = 1
    executor: str = "process"
    fail_fast: bool = False
    progress: bool = False


@dataclass
class ForestKnnConfig:
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    partition: PartitionConfig = field(default_factory=PartitionConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    impute: ImputeConfig = field(default_factory=ImputeConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_SECTIONS = {
    "sampling": SamplingConfig,
    "partition": PartitionConfig,
    "model": ModelConfig,
    "impute": ImputeConfig,
}


def _build_section(name: str, values: Mapping[str, Any]):
    cls = _SECTIONS[name]
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise InvalidInputError(
            f"Unknown option(s) in '{name}' section: {', '.join(unknown)}."
        )
    return cls(**dict(values))


def config_from_dict(data: Mapping[str, Any]) -> ForestKnnConfig:
    """Build a :class:`ForestKnnConfig` from a nested mapping."""
    if not isinstance(data, Mapping):
        raise InvalidInputError("Configuration must be a mapping of sections.")
    unknown = sorted(set(data) - set(_SECTIONS))
    if unknown:
        raise InvalidInputError(f"Unknown configuration section(s): {', '.join(unknown)}.")

    sections = {}
    for name in _SECTIONS:
        values = data.get(name) or {}
        if not isinstance(values, Mapping):
            raise InvalidInputError(f"Section '{name}' must be a JSON object.")
        sections[name] = _build_section(name, values)
    return ForestKnnConfig(**sections)


def load_config(path: PathLike) -> ForestKnnConfig:
    """Read a JSON configuration file."""
    with open(path, "r", encoding="utf-8") as src:
        data = json.load(src)
    return config_from_dict(data)


def configure_logging(verbosity: int) -> logging.Logger:
    """Configure logging: -v for info, -vv for debug, warnings otherwise."""
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(message)s")
    else:
        root.setLevel(level)

    logger = logging.getLogger(PACKAGE_LOGGER_NAME)
    logger.setLevel(level)
    return logger
