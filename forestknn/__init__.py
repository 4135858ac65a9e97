"""Top-level package for forestknn."""

from .accuracy import cross_validate, evaluate, evaluate_frame
from .config import (
    ForestKnnConfig,
    ImputeConfig,
    ModelConfig,
    PartitionConfig,
    SamplingConfig,
    configure_logging,
    load_config,
)
from .errors import (
    ConstraintWarning,
    DegenerateStatisticError,
    ForestKnnError,
    InvalidInputError,
    PartialComputeError,
    PartialComputeWarning,
    SchemaMismatchError,
)
from .grid import ArrayGrid, GridIndex, RasterGrid
from .imputation import impute, impute_to_raster
from .model import NearnessModel, build_training_table
from .partition import make_partition, partition
from .sampling import SampleSet, allocate_strata, extract_at_points, get_sample, sample

__version__ = "0.1.0"

__all__ = [
    "GridIndex",
    "ArrayGrid",
    "RasterGrid",
    "sample",
    "get_sample",
    "allocate_strata",
    "extract_at_points",
    "SampleSet",
    "make_partition",
    "partition",
    "NearnessModel",
    "build_training_table",
    "impute",
    "impute_to_raster",
    "evaluate",
    "evaluate_frame",
    "cross_validate",
    "ForestKnnConfig",
    "SamplingConfig",
    "PartitionConfig",
    "ModelConfig",
    "ImputeConfig",
    "load_config",
    "configure_logging",
    "ForestKnnError",
    "InvalidInputError",
    "SchemaMismatchError",
    "DegenerateStatisticError",
    "PartialComputeError",
    "PartialComputeWarning",
    "ConstraintWarning",
]
