"""Training/testing splits of a sample set."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.model_selection import KFold, StratifiedKFold

from .config import PartitionConfig
from .errors import ConstraintWarning, InvalidInputError, warn

PARTITION_LOGGER_NAME = "forestknn.partition"
RANDOM_HOLDOUT = "random_holdout"
GROUP_HOLDOUT = "group_holdout"
KFOLD = "kfold"
STRATEGIES = (RANDOM_HOLDOUT, GROUP_HOLDOUT, KFOLD)


def _get_logger() -> logging.Logger:
    return logging.getLogger(PARTITION_LOGGER_NAME)


@dataclass
class Fold:
    train: np.ndarray
    test: np.ndarray


@dataclass
class Partition:
    """Ordered folds; indices refer to positions in the sample ordering."""

    strategy: str
    folds: Dict[str, Fold]

    def __len__(self) -> int:
        return len(self.folds)

    def __iter__(self) -> Iterator[Tuple[str, Fold]]:
        return iter(self.folds.items())

    def indices(self, return_train: bool = True) -> Dict[str, np.ndarray]:
        return {
            fold_id: (fold.train if return_train else fold.test)
            for fold_id, fold in self.folds.items()
        }


def _normalize_strategy(strategy: str) -> str:
    key = str(strategy).strip().lower().replace(" ", "_").replace("-", "_")
    if key not in STRATEGIES:
        raise InvalidInputError(
            f"Unknown partition strategy '{strategy}'. "
            f"Expected one of: {', '.join(STRATEGIES)}."
        )
    return key


def _is_numeric(values: np.ndarray) -> bool:
    return np.issubdtype(values.dtype, np.number) and not np.issubdtype(
        values.dtype, np.bool_
    )


def _quantile_groups(values: np.ndarray, groups: int) -> Tuple[np.ndarray, int]:
    if groups < 2 or np.unique(values).size < 2:
        return np.zeros(values.shape[0], dtype=np.int64), 1
    codes = pd.qcut(values, q=groups, labels=False, duplicates="drop")
    codes = np.asarray(codes, dtype=np.int64)
    return codes, int(codes.max()) + 1 if codes.size else 0


def _category_codes(values: np.ndarray) -> Tuple[np.ndarray, int]:
    codes, uniques = pd.factorize(values, sort=True)
    return codes.astype(np.int64), len(uniques)


def _as_labels(labels: Sequence) -> np.ndarray:
    values = np.asarray(labels)
    if values.ndim != 1:
        raise InvalidInputError("labels must be one-dimensional.")
    if values.size == 0:
        raise InvalidInputError("labels must not be empty.")
    if pd.isna(values).any():
        raise InvalidInputError("labels must not contain missing values.")
    return values


def _complement(size: int, chosen: np.ndarray) -> np.ndarray:
    mask = np.ones(size, dtype=bool)
    mask[chosen] = False
    return np.nonzero(mask)[0]


def _random_holdout(size: int, train_fraction: float, rng: np.random.Generator) -> np.ndarray:
    count = int(round(train_fraction * size))
    return np.sort(rng.choice(size, size=count, replace=False))


def _group_holdout(
    values: np.ndarray,
    train_fraction: float,
    num_groups: int,
    rng: np.random.Generator,
) -> np.ndarray:
    logger = _get_logger()
    if _is_numeric(values):
        distinct = np.unique(values).size
        if num_groups > distinct:
            warn(
                logger,
                f"num_groups={num_groups} exceeds the {distinct} distinct label "
                f"values; using {distinct} groups.",
                ConstraintWarning,
            )
            num_groups = distinct
        codes, effective = _quantile_groups(values.astype("float64"), max(1, num_groups))
        if effective < num_groups:
            logger.info(
                "Quantile breaks collapsed %d groups into %d.", num_groups, effective
            )
    else:
        codes, effective = _category_codes(values)

    chosen = []
    for group in range(effective):
        members = np.nonzero(codes == group)[0]
        if members.size == 0:
            continue
        if members.size == 1:
            chosen.append(members)
            continue
        take = int(math.ceil(train_fraction * members.size))
        chosen.append(rng.choice(members, size=take, replace=False))
    return np.sort(np.concatenate(chosen))


def _kfold(
    values: np.ndarray,
    train_fraction: float,
    seed: Optional[int],
) -> Dict[str, Fold]:
    size = values.shape[0]
    k = int(round(1 / (1 - train_fraction)))
    if k < 2:
        raise InvalidInputError(
            f"train_fraction={train_fraction} gives {k} fold(s); k-fold needs at least 2."
        )
    if k > size:
        raise InvalidInputError(f"Cannot build {k} folds from {size} samples.")

    if _is_numeric(values):
        groups = min(5, max(2, size // k))
        strata, _ = _quantile_groups(values.astype("float64"), groups)
    else:
        strata, _ = _category_codes(values)

    placeholder = np.zeros(size)
    try:
        splitter = StratifiedKFold(n_splits=k, shuffle=True, random_state=seed)
        splits = list(splitter.split(placeholder, strata))
    except ValueError:
        warn(
            _get_logger(),
            "Stratified folds failed; falling back to unstratified k-fold.",
            ConstraintWarning,
        )
        splitter = KFold(n_splits=k, shuffle=True, random_state=seed)
        splits = list(splitter.split(placeholder))

    return {
        f"Fold{idx}": Fold(train=np.sort(train), test=np.sort(test))
        for idx, (train, test) in enumerate(splits, start=1)
    }


def make_partition(
    labels: Sequence,
    strategy: str = GROUP_HOLDOUT,
    train_fraction: float = 0.75,
    num_groups: Optional[int] = None,
    seed: Optional[int] = None,
) -> Partition:
    """Split sample positions into training and testing folds.

    ``random_holdout`` draws ``round(train_fraction * N)`` training rows.
    ``group_holdout`` bins numeric ``labels`` into ``num_groups`` quantile
    groups (or uses categories as groups) and draws ``train_fraction`` of each
    group. ``kfold`` builds ``round(1 / (1 - train_fraction))`` folds
    stratified by ``labels``. Holdout strategies return a single fold.
    """

    values = _as_labels(labels)
    key = _normalize_strategy(strategy)
    if not 0 < train_fraction < 1:
        raise InvalidInputError("train_fraction must be between 0 and 1.")
    size = values.shape[0]

    if key == KFOLD:
        return Partition(strategy=key, folds=_kfold(values, train_fraction, seed))

    rng = np.random.default_rng(seed)
    if key == RANDOM_HOLDOUT:
        train = _random_holdout(size, train_fraction, rng)
    else:
        if num_groups is None:
            num_groups = min(5, size)
        if num_groups < 1:
            raise InvalidInputError("num_groups must be >= 1.")
        train = _group_holdout(values, train_fraction, num_groups, rng)
    return Partition(
        strategy=key, folds={"Fold1": Fold(train=train, test=_complement(size, train))}
    )


def partition(
    labels: Sequence,
    strategy: str = GROUP_HOLDOUT,
    train_fraction: float = 0.75,
    num_groups: Optional[int] = None,
    return_train: bool = True,
    seed: Optional[int] = None,
) -> Dict[str, np.ndarray]:
    """Return training (or testing, with ``return_train=False``) indices per fold."""
    split = make_partition(
        labels,
        strategy=strategy,
        train_fraction=train_fraction,
        num_groups=num_groups,
        seed=seed,
    )
    return split.indices(return_train=return_train)


def partition_from_config(labels: Sequence, config: PartitionConfig) -> Partition:
    return make_partition(
        labels,
        strategy=config.strategy,
        train_fraction=config.train_fraction,
        num_groups=config.num_groups,
        seed=config.seed,
    )
