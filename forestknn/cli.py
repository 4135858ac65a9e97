"""Console script entry point for forestknn."""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, List, Optional, Sequence

import geopandas as gpd
import pandas as pd

from .accuracy import cross_validate, evaluate, evaluate_frame, format_accuracy
from .config import ForestKnnConfig, configure_logging, load_config
from .errors import ForestKnnError, InvalidInputError
from .grid import RasterGrid
from .imputation import EXECUTORS, impute_from_config
from .model import NearnessModel, build_training_table
from .partition import KFOLD, STRATEGIES, partition_from_config
from .sampling import extract_at_points, get_sample

NO_SPLIT = "none"


def _add_image_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--image",
        required=True,
        nargs="+",
        action="append",
        help=(
            "Predictor raster(s): pass one or more GeoTIFF/VRT paths after --image, "
            "or repeat --image. Directories are expanded to TIFFs."
        ),
    )
    parser.add_argument(
        "--layers",
        nargs="+",
        help="Optional predictor layer names to use, in order.",
    )


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        help="JSON configuration file; command-line options override it.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity: -v (info), -vv (debug).",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="forestknn",
        description="Stratified sampling and k-NN imputation of forest structure.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sample_parser = subparsers.add_parser(
        "sample", help="Cluster predictors into strata and draw sample points."
    )
    _add_image_arg(sample_parser)
    sample_parser.add_argument("--n", type=int, help="Number of samples to draw.")
    sample_parser.add_argument(
        "--strata", type=int, help="Number of k-means strata (default: 5)."
    )
    sample_parser.add_argument(
        "--mindist",
        type=float,
        help="Minimum distance between samples in map units (default: 0).",
    )
    sample_parser.add_argument(
        "--max-iter",
        type=float,
        help="Draws allowed per requested sample in a stratum (default: 30).",
    )
    sample_parser.add_argument(
        "--no-xy",
        dest="include_xy",
        action="store_false",
        default=None,
        help="Do not store x/y coordinates as attribute fields.",
    )
    sample_parser.add_argument("--seed", type=int, help="Random seed.")
    sample_parser.add_argument(
        "--cluster-out", help="Optional path for the stratum raster (GeoTIFF)."
    )
    sample_parser.add_argument(
        "--output", required=True, help="Path for the sample points (e.g. GeoPackage)."
    )
    _add_common_args(sample_parser)

    train_parser = subparsers.add_parser(
        "train", help="Fit a nearness model on sampled predictors and responses."
    )
    _add_image_arg(train_parser)
    train_parser.add_argument(
        "--samples", required=True, help="Sample points (vector file)."
    )
    train_parser.add_argument(
        "--responses",
        required=True,
        help="CSV of response variables, one row per sample point in the same order.",
    )
    train_parser.add_argument(
        "--response-columns",
        nargs="+",
        help="Response columns to use (default: all columns of --responses).",
    )
    train_parser.add_argument(
        "--model-out", required=True, help="Path to save the fitted model (.joblib)."
    )
    train_parser.add_argument(
        "--method", choices=["randomForest", "euclidean"], help="Nearness method."
    )
    train_parser.add_argument("--k", type=int, help="Number of neighbours.")
    train_parser.add_argument(
        "--estimate",
        choices=["closest", "mean", "dstWeighted"],
        help="How donor values are combined.",
    )
    train_parser.add_argument(
        "--n-trees", type=int, help="Number of trees for randomForest (default: 500)."
    )
    train_parser.add_argument(
        "--jobs", type=int, help="Parallel jobs for forest training (default: 1)."
    )
    train_parser.add_argument("--seed", type=int, help="Random seed.")
    train_parser.add_argument(
        "--split",
        choices=list(STRATEGIES) + [NO_SPLIT],
        help="Validation split strategy (default: group_holdout).",
    )
    train_parser.add_argument(
        "--train-fraction", type=float, help="Training fraction (default: 0.75)."
    )
    train_parser.add_argument(
        "--groups", type=int, help="Quantile groups for group_holdout (default: 5)."
    )
    train_parser.add_argument(
        "--accuracy-out", help="Optional CSV path for the validation accuracy table."
    )
    _add_common_args(train_parser)

    impute_parser = subparsers.add_parser(
        "impute", help="Apply a fitted model to every cell of a predictor raster."
    )
    _add_image_arg(impute_parser)
    impute_parser.add_argument("--model", required=True, help="Fitted model path.")
    impute_parser.add_argument(
        "--output", required=True, help="Path for the imputed GeoTIFF."
    )
    impute_parser.add_argument("--k", type=int, help="Override the model's k.")
    impute_parser.add_argument(
        "--chunk-rows", type=int, help="Rows per processing band (default: 256)."
    )
    impute_parser.add_argument(
        "--jobs",
        type=int,
        help="Parallel workers for band imputation (default: 1). Use -1 for all cores.",
    )
    impute_parser.add_argument(
        "--executor", choices=list(EXECUTORS), help="Worker type (default: process)."
    )
    impute_parser.add_argument(
        "--fail-fast",
        action="store_true",
        default=None,
        help="Abort on the first failed band instead of leaving it as no data.",
    )
    impute_parser.add_argument(
        "--progress",
        action="store_true",
        default=None,
        help="Show a progress bar.",
    )
    _add_common_args(impute_parser)

    accuracy_parser = subparsers.add_parser(
        "accuracy", help="Compare reference and estimated values in a CSV table."
    )
    accuracy_parser.add_argument("--table", required=True, help="Input CSV.")
    accuracy_parser.add_argument(
        "--reference", required=True, help="Column with reference values."
    )
    accuracy_parser.add_argument(
        "--estimate", required=True, help="Column with estimated values."
    )
    accuracy_parser.add_argument("--group", help="Optional grouping column.")
    accuracy_parser.add_argument(
        "--permissive",
        action="store_true",
        help="Report undefined statistics as NaN instead of failing.",
    )
    accuracy_parser.add_argument("--output", help="Optional CSV path for the table.")
    _add_common_args(accuracy_parser)
    return parser


def _flatten_image_args(image_args: Sequence[Sequence[str]]) -> List[str]:
    images: List[str] = []
    for group in image_args:
        images.extend(group)
    return images


def _load_config(path: Optional[str]) -> ForestKnnConfig:
    return load_config(path) if path else ForestKnnConfig()


def _override(section: Any, **values: Any) -> Any:
    """Replace dataclass fields with the command-line values that were given."""
    given = {key: value for key, value in values.items() if value is not None}
    return replace(section, **given)


def _open_grid(args: argparse.Namespace) -> RasterGrid:
    grid = RasterGrid(_flatten_image_args(args.image))
    if args.layers:
        grid = grid.select(args.layers)
    return grid


def _run_sample(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _override(
        _load_config(args.config).sampling,
        n=args.n,
        strata=args.strata,
        mindist=args.mindist,
        max_iter=args.max_iter,
        include_xy=args.include_xy,
        seed=args.seed,
    )
    with _open_grid(args) as grid:
        samples, _ = get_sample(
            grid, config, cluster_out=args.cluster_out, samples_out=args.output
        )
    logger.info("Selected %d of %d requested samples.", len(samples), config.n)
    for stratum, count in sorted(samples.counts().items()):
        print(f"stratum {stratum:4d}  {count:6d}")
    return 0


def _read_responses(path: str, columns: Optional[Sequence[str]]) -> pd.DataFrame:
    table = pd.read_csv(path)
    if columns:
        missing = [col for col in columns if col not in table.columns]
        if missing:
            raise InvalidInputError(
                f"Response column(s) not found in {path}: {', '.join(missing)}."
            )
        table = table[list(columns)]
    return table


def _run_train(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load_config(args.config)
    model_config = _override(
        config.model,
        method=args.method,
        k=args.k,
        estimate=args.estimate,
        n_trees=args.n_trees,
        n_jobs=args.jobs,
        seed=args.seed,
    )
    split = args.split or config.partition.strategy
    responses = _read_responses(args.responses, args.response_columns)
    points = gpd.read_file(args.samples)
    with _open_grid(args) as grid:
        features = extract_at_points(grid, points)
    table = build_training_table(features, responses)
    complete = table.notna().all(axis=1).to_numpy()
    if not complete.all():
        logger.warning(
            "Dropping %d sample(s) with missing predictor or response values.",
            int((~complete).sum()),
        )
    features = features[complete].reset_index(drop=True)
    responses = responses[complete].reset_index(drop=True)

    if split == NO_SPLIT:
        model = NearnessModel.from_config(model_config).fit(features, responses)
        model.save(args.model_out)
        return 0

    partition_config = _override(
        config.partition,
        strategy=split,
        train_fraction=args.train_fraction,
        num_groups=args.groups,
        seed=args.seed,
    )
    folds = partition_from_config(responses.iloc[:, 0].to_numpy(), partition_config)
    predictions = cross_validate(features, responses, folds, model_config)
    tables = []
    for name, rows in predictions.groupby("response", sort=False):
        table = evaluate(rows["reference"].to_numpy(), rows["estimate"].to_numpy())
        table.insert(0, "response", name)
        tables.append(table)
    accuracy = pd.concat(tables, ignore_index=True)
    print(format_accuracy(accuracy))
    if args.accuracy_out:
        accuracy.to_csv(args.accuracy_out, index=False)
        logger.info("Accuracy table written to %s", args.accuracy_out)

    if folds.strategy == KFOLD:
        train_rows = None
    else:
        train_rows = next(iter(folds.folds.values())).train
    if train_rows is None:
        model = NearnessModel.from_config(model_config).fit(features, responses)
    else:
        model = NearnessModel.from_config(model_config).fit(
            features.iloc[train_rows], responses.iloc[train_rows]
        )
    model.save(args.model_out)
    return 0


def _run_impute(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _override(
        _load_config(args.config).impute,
        chunk_rows=args.chunk_rows,
        parallel_workers=args.jobs,
        executor=args.executor,
        fail_fast=args.fail_fast,
        progress=args.progress,
    )
    model = NearnessModel.load(args.model)
    grid = _open_grid(args)
    result = impute_from_config(model, grid, config, output_path=args.output, k=args.k)
    if not result.complete:
        logger.error("%d band(s) failed; their cells are left as no data.", len(result.errors))
        return 1
    return 0


def _run_accuracy(args: argparse.Namespace, logger: logging.Logger) -> int:
    table = pd.read_csv(args.table)
    missing = [
        col
        for col in (args.reference, args.estimate, args.group)
        if col is not None and col not in table.columns
    ]
    if missing:
        raise InvalidInputError(f"Column(s) not found in {args.table}: {', '.join(missing)}.")
    groups = table[args.group].to_numpy() if args.group else None
    accuracy = evaluate_frame(
        table[[args.reference]],
        table[[args.estimate]].set_axis([args.reference], axis=1),
        group_by=groups,
        permissive=args.permissive,
    )
    print(format_accuracy(accuracy))
    if args.output:
        out_path = Path(args.output)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        accuracy.to_csv(out_path, index=False)
        logger.info("Accuracy table written to %s", out_path)
    return 0


_COMMANDS = {
    "sample": _run_sample,
    "train": _run_train,
    "impute": _run_impute,
    "accuracy": _run_accuracy,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Dispatch to the requested subcommand."""
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    logger = configure_logging(args.verbose)
    try:
        return _COMMANDS[args.command](args, logger)
    except ForestKnnError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
