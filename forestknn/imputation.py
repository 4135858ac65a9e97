"""Band-wise k-NN imputation of predictor grids."""

from __future__ import annotations

import atexit
import concurrent.futures
import contextlib
import logging
import math
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

import numpy as np
import rasterio
from rasterio import windows
from rich.progress import (
    BarColumn,
    Progress,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)

from .cluster import DEFAULT_CHUNK_ROWS
from .config import ImputeConfig
from .errors import (
    InvalidInputError,
    PartialComputeError,
    PartialComputeWarning,
    SchemaMismatchError,
    warn,
)
from .grid import PredictorGrid, as_predictor_grid
from .model import NearnessModel, neighbor_band_name

IMPUTE_LOGGER_NAME = "forestknn.imputation"
NEIGHBOR_NODATA = -1
EXECUTORS = ("process", "thread")

PathLike = Union[str, Path]
Band = Tuple[int, int]
BandResult = Tuple[np.ndarray, np.ndarray]


def _get_logger() -> logging.Logger:
    return logging.getLogger(IMPUTE_LOGGER_NAME)


@dataclass
class BandError:
    row_off: int
    nrows: int
    error: str

    def __str__(self) -> str:
        return f"rows {self.row_off}-{self.row_off + self.nrows - 1}: {self.error}"


@dataclass
class PredictionGrid:
    """Imputed responses and donor ids on the predictor grid's footprint.

    ``estimates`` is ``(responses, rows, cols)`` with NaN for no data;
    ``neighbors`` is ``(k, rows, cols)`` training-row ids with -1 for no data.
    """

    estimates: np.ndarray
    neighbors: np.ndarray
    response_names: List[str]
    transform: Any = None
    crs: Any = None

    @property
    def shape(self) -> Tuple[int, int]:
        return int(self.estimates.shape[1]), int(self.estimates.shape[2])

    @property
    def neighbor_names(self) -> List[str]:
        return [neighbor_band_name(rank + 1) for rank in range(self.neighbors.shape[0])]

    @property
    def band_names(self) -> List[str]:
        return list(self.response_names) + self.neighbor_names

    def band(self, name: str) -> np.ndarray:
        if name in self.response_names:
            return self.estimates[self.response_names.index(name)]
        if name in self.neighbor_names:
            return self.neighbors[self.neighbor_names.index(name)]
        raise KeyError(name)

    def valid_mask(self) -> np.ndarray:
        return self.neighbors[0] != NEIGHBOR_NODATA

    def to_raster(self, path: PathLike) -> Path:
        """Write all bands to a float64 GeoTIFF; no data is NaN."""
        out_path = _prepare_output_path(path)
        profile = _output_profile(
            {
                "driver": "GTiff",
                "height": self.shape[0],
                "width": self.shape[1],
                "transform": self.transform,
                "crs": self.crs,
            },
            count=len(self.band_names),
        )
        with rasterio.open(out_path, "w", **profile) as dst:
            _describe_bands(dst, self.band_names)
            _write_band(dst, 0, self.estimates, self.neighbors)
        _get_logger().info("Imputed grid saved to %s", out_path)
        return out_path


@dataclass
class ImputationResult:
    grid: Optional[PredictionGrid]
    bands: List[Band]
    errors: List[BandError] = field(default_factory=list)
    output_path: Optional[Path] = None

    @property
    def complete(self) -> bool:
        return not self.errors


def band_windows(height: int, chunk_rows: int) -> List[Band]:
    """Contiguous, non-overlapping ``(row_off, nrows)`` bands covering ``height``."""
    if chunk_rows < 1:
        raise InvalidInputError("chunk_rows must be >= 1.")
    return [
        (row_off, min(chunk_rows, height - row_off))
        for row_off in range(0, height, chunk_rows)
    ]


def _resolve_chunk_rows(height: int, chunk_rows: Optional[int], workers: int) -> int:
    if chunk_rows is not None:
        return int(chunk_rows)
    if workers > 1:
        return max(1, min(DEFAULT_CHUNK_ROWS, math.ceil(height / workers)))
    return DEFAULT_CHUNK_ROWS


def _resolve_workers(parallel_workers: Optional[int]) -> int:
    if parallel_workers is None:
        return 1
    if parallel_workers <= 0:
        return max(1, os.cpu_count() or 1)
    return int(parallel_workers)


def _align_grid(model: NearnessModel, grid: PredictorGrid) -> PredictorGrid:
    if not model.is_fitted:
        raise InvalidInputError("Model has not been fit.")
    assert model.feature_names_ is not None
    expected = list(model.feature_names_)
    names = grid.layer_names
    if len(set(names)) != len(names):
        raise SchemaMismatchError("Predictor grid has duplicate layer names.")
    extra = [name for name in names if name not in expected]
    if extra:
        raise SchemaMismatchError(
            "Predictor layer(s) not used by the model: "
            + ", ".join(extra)
            + ". Select the model's layers with PredictorGrid.select()."
        )
    return grid.select(expected)


def _predict_band(
    model: NearnessModel, grid: PredictorGrid, row_off: int, nrows: int, k: int
) -> BandResult:
    """Impute one band; cells with any missing predictor stay no data."""

    block = grid.read_rows(row_off, nrows)
    samples = block.reshape(grid.count, -1).T
    valid = ~np.isnan(samples).any(axis=1)

    n_resp = len(model.response_names_ or [])
    estimates = np.full((samples.shape[0], n_resp), np.nan, dtype="float64")
    neighbors = np.full((samples.shape[0], k), NEIGHBOR_NODATA, dtype=np.int64)
    if np.any(valid):
        est, ids = model.predict(samples[valid], k)
        estimates[valid] = est
        neighbors[valid] = ids

    return (
        estimates.T.reshape(n_resp, nrows, grid.width),
        neighbors.T.reshape(k, nrows, grid.width),
    )


_WORKER_MODEL: Optional[NearnessModel] = None
_WORKER_GRID: Optional[PredictorGrid] = None
_WORKER_K: int = 1


def _close_impute_worker() -> None:
    global _WORKER_GRID
    if _WORKER_GRID is not None:
        _WORKER_GRID.close()
        _WORKER_GRID = None


def _init_impute_worker(model: NearnessModel, grid: PredictorGrid, k: int) -> None:
    global _WORKER_MODEL
    global _WORKER_GRID
    global _WORKER_K

    _WORKER_MODEL = model
    _WORKER_GRID = grid
    _WORKER_K = k
    atexit.register(_close_impute_worker)


def _impute_band_worker(row_off: int, nrows: int) -> BandResult:
    if _WORKER_MODEL is None or _WORKER_GRID is None:
        raise RuntimeError("Imputation worker not initialized.")
    return _predict_band(_WORKER_MODEL, _WORKER_GRID, row_off, nrows, _WORKER_K)


class _ThreadGrids:
    """One grid copy per thread; raster datasets are not shared across threads."""

    def __init__(self, grid: PredictorGrid):
        self._grid = grid
        self._local = threading.local()
        self._lock = threading.Lock()
        self._copies: List[PredictorGrid] = []

    def get(self) -> PredictorGrid:
        grid = getattr(self._local, "grid", None)
        if grid is None:
            grid = self._grid._copy()
            self._local.grid = grid
            with self._lock:
                self._copies.append(grid)
        return grid

    def close(self) -> None:
        with self._lock:
            for grid in self._copies:
                grid.close()
            self._copies = []


def _start_pool(
    model: NearnessModel,
    grid: PredictorGrid,
    *,
    k: int,
    workers: int,
    executor: str,
) -> Tuple[Optional[concurrent.futures.Executor], Optional[_ThreadGrids], Callable]:
    """Create the worker pool and its submit function; no pool when sequential."""

    if workers <= 1:
        return None, None, lambda band: None
    if executor == "process":
        pool: concurrent.futures.Executor = concurrent.futures.ProcessPoolExecutor(
            max_workers=workers,
            initializer=_init_impute_worker,
            initargs=(model, grid, k),
        )

        def submit(band: Band) -> concurrent.futures.Future:
            return pool.submit(_impute_band_worker, band[0], band[1])

        return pool, None, submit

    thread_grids = _ThreadGrids(grid)
    pool = concurrent.futures.ThreadPoolExecutor(max_workers=workers)

    def submit_thread(band: Band) -> concurrent.futures.Future:
        return pool.submit(
            lambda: _predict_band(model, thread_grids.get(), band[0], band[1], k)
        )

    return pool, thread_grids, submit_thread


def _iter_band_results(
    model: NearnessModel,
    grid: PredictorGrid,
    bands: List[Band],
    *,
    k: int,
    workers: int,
    submit: Callable[[Band], Optional[concurrent.futures.Future]],
) -> Iterator[Tuple[Band, Optional[BandResult], Optional[BaseException]]]:
    """Yield ``(band, result, error)`` as bands finish, in completion order."""

    if workers <= 1:
        for band in bands:
            try:
                result = _predict_band(model, grid, band[0], band[1], k)
            except Exception as exc:
                yield band, None, exc
            else:
                yield band, result, None
        return

    max_pending = workers * 2
    futures: Dict[concurrent.futures.Future, Band] = {}

    def drain(
        done: Any,
    ) -> Iterator[Tuple[Band, Optional[BandResult], Optional[BaseException]]]:
        for finished in done:
            band = futures.pop(finished)
            exc = finished.exception()
            if exc is not None:
                yield band, None, exc
            else:
                yield band, finished.result(), None

    for band in bands:
        futures[submit(band)] = band
        if len(futures) >= max_pending:
            done, _ = concurrent.futures.wait(
                futures, return_when=concurrent.futures.FIRST_COMPLETED
            )
            yield from drain(done)
    while futures:
        done, _ = concurrent.futures.wait(
            futures, return_when=concurrent.futures.FIRST_COMPLETED
        )
        yield from drain(done)


@contextlib.contextmanager
def _progress(enabled: bool, total: int) -> Iterator[Callable[[], None]]:
    # Refreshed on advance only: a background refresh thread must not be
    # running when process workers fork.
    if not enabled:
        yield lambda: None
        return
    progress = Progress(
        BarColumn(),
        TextColumn("{task.description}"),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        auto_refresh=False,
    )
    with progress:
        task_id = progress.add_task("Imputing bands", total=total)
        progress.refresh()
        yield lambda: progress.update(task_id, advance=1, refresh=True)


def _run(
    model: NearnessModel,
    predictor_grid,
    *,
    chunk_rows: Optional[int],
    parallel_workers: Optional[int],
    k: Optional[int],
    executor: str,
    fail_fast: bool,
    progress: bool,
    on_band: Callable[[Band, Optional[BandResult]], None],
) -> Tuple[List[Band], List[BandError]]:
    logger = _get_logger()
    if executor not in EXECUTORS:
        raise InvalidInputError(
            f"executor must be one of {', '.join(EXECUTORS)}; got '{executor}'."
        )
    grid = _align_grid(model, as_predictor_grid(predictor_grid))
    k = model.resolve_k(k)
    workers = _resolve_workers(parallel_workers)
    rows = _resolve_chunk_rows(grid.height, chunk_rows, workers)
    bands = band_windows(grid.height, rows)

    if workers > 1 and model.forest_ is not None and model.n_jobs not in (None, 1):
        logger.warning(
            "Band-level parallelism requested but model n_jobs=%s. This may "
            "oversubscribe CPU; consider n_jobs=1 for imputation.",
            model.n_jobs,
        )
    logger.info(
        "Imputing %d x %d grid in %d band(s) of up to %d rows with %d worker(s).",
        grid.height,
        grid.width,
        len(bands),
        rows,
        workers,
    )

    errors: List[BandError] = []
    pool, thread_grids, submit = _start_pool(
        model, grid, k=k, workers=workers, executor=executor
    )
    band_results = _iter_band_results(
        model, grid, bands, k=k, workers=workers, submit=submit
    )
    try:
        with contextlib.closing(band_results), _progress(progress, len(bands)) as advance:
            for band, result, exc in band_results:
                if exc is not None:
                    error = BandError(band[0], band[1], f"{type(exc).__name__}: {exc}")
                    errors.append(error)
                    logger.error("Band failed (%s).", error)
                    if fail_fast:
                        raise PartialComputeError(
                            f"Imputation aborted after band failure ({error}).", errors
                        ) from exc
                on_band(band, result)
                advance()
    finally:
        if pool is not None:
            pool.shutdown(wait=True, cancel_futures=True)
        if thread_grids is not None:
            thread_grids.close()
        grid.close()

    if errors:
        warn(
            logger,
            f"{len(errors)} of {len(bands)} band(s) failed; their cells are left as no data.",
            PartialComputeWarning,
        )
    return bands, errors


def impute(
    model: NearnessModel,
    predictor_grid,
    chunk_rows: Optional[int] = None,
    parallel_workers: Optional[int] = 1,
    *,
    k: Optional[int] = None,
    executor: str = "process",
    fail_fast: bool = False,
    progress: bool = False,
) -> ImputationResult:
    """Apply ``model`` to every cell of ``predictor_grid`` band by band.

    Rows are split into bands of ``chunk_rows`` (by default
    ``DEFAULT_CHUNK_ROWS``, or ``ceil(rows / parallel_workers)`` when parallel
    and smaller). Bands run sequentially or on ``parallel_workers`` process or thread workers, and each result is
    placed at its own row offset, so output does not depend on band size or
    worker count. Grid layers are matched to model features by name. A
    failed band leaves its cells as no data and is listed in
    ``ImputationResult.errors`` unless ``fail_fast`` is set.
    """

    grid = as_predictor_grid(predictor_grid)
    k_value = model.resolve_k(k) if model.is_fitted else 1
    n_resp = len(model.response_names_ or [])
    estimates = np.full((n_resp, grid.height, grid.width), np.nan, dtype="float64")
    neighbors = np.full((k_value, grid.height, grid.width), NEIGHBOR_NODATA, dtype=np.int64)

    def on_band(band: Band, result: Optional[BandResult]) -> None:
        if result is None:
            return
        row_off, nrows = band
        estimates[:, row_off : row_off + nrows, :] = result[0]
        neighbors[:, row_off : row_off + nrows, :] = result[1]

    bands, errors = _run(
        model,
        grid,
        chunk_rows=chunk_rows,
        parallel_workers=parallel_workers,
        k=k,
        executor=executor,
        fail_fast=fail_fast,
        progress=progress,
        on_band=on_band,
    )
    prediction = PredictionGrid(
        estimates=estimates,
        neighbors=neighbors,
        response_names=list(model.response_names_ or []),
        transform=grid.transform,
        crs=grid.crs,
    )
    return ImputationResult(grid=prediction, bands=bands, errors=errors)


def impute_to_raster(
    model: NearnessModel,
    predictor_grid,
    output_path: PathLike,
    chunk_rows: Optional[int] = DEFAULT_CHUNK_ROWS,
    parallel_workers: Optional[int] = 1,
    *,
    k: Optional[int] = None,
    executor: str = "process",
    fail_fast: bool = False,
    progress: bool = False,
) -> ImputationResult:
    """Impute band by band straight into a multi-band GeoTIFF.

    Bands are named after the response variables, then ``nn1``..``nnk`` for
    donor ids. All bands are float64 with NaN as no data. Neither the
    predictors nor the output are held in memory beyond one band per worker.
    """

    grid = as_predictor_grid(predictor_grid)
    k_value = model.resolve_k(k)
    response_names = list(model.response_names_ or [])
    band_names = response_names + [neighbor_band_name(r + 1) for r in range(k_value)]
    out_path = _prepare_output_path(output_path)
    profile = _output_profile(grid.profile(), count=len(band_names))

    with rasterio.open(out_path, "w", **profile) as dst:
        _describe_bands(dst, band_names)

        def on_band(band: Band, result: Optional[BandResult]) -> None:
            row_off, nrows = band
            if result is None:
                result = (
                    np.full((len(response_names), nrows, grid.width), np.nan),
                    np.full((k_value, nrows, grid.width), NEIGHBOR_NODATA, dtype=np.int64),
                )
            _write_band(dst, row_off, result[0], result[1])

        bands, errors = _run(
            model,
            grid,
            chunk_rows=chunk_rows,
            parallel_workers=parallel_workers,
            k=k,
            executor=executor,
            fail_fast=fail_fast,
            progress=progress,
            on_band=on_band,
        )

    _get_logger().info("Imputed grid saved to %s", out_path)
    return ImputationResult(grid=None, bands=bands, errors=errors, output_path=out_path)


def impute_from_config(
    model: NearnessModel,
    predictor_grid,
    config: ImputeConfig,
    output_path: Optional[PathLike] = None,
    k: Optional[int] = None,
) -> ImputationResult:
    options = dict(
        chunk_rows=config.chunk_rows,
        parallel_workers=config.parallel_workers,
        k=k,
        executor=config.executor,
        fail_fast=config.fail_fast,
        progress=config.progress,
    )
    if output_path is None:
        return impute(model, predictor_grid, **options)
    if options["chunk_rows"] is None:
        options["chunk_rows"] = DEFAULT_CHUNK_ROWS
    return impute_to_raster(model, predictor_grid, output_path, **options)


def _prepare_output_path(path: PathLike) -> Path:
    out_path = Path(path)
    if out_path.suffix.lower() == ".vrt":
        out_path = out_path.with_suffix(".tif")
        _get_logger().warning(
            "Output path ended with .vrt; writing GeoTIFF to .tif instead."
        )
    out_path.parent.mkdir(parents=True, exist_ok=True)
    return out_path


def _output_profile(profile: dict, *, count: int) -> dict:
    profile = profile.copy()
    profile.update(driver="GTiff", count=count, dtype="float64", nodata=np.nan)
    return profile


def _describe_bands(dst, names: List[str]) -> None:
    for idx, name in enumerate(names, start=1):
        dst.set_band_description(idx, name)


def _write_band(dst, row_off: int, estimates: np.ndarray, neighbors: np.ndarray) -> None:
    nrows = int(neighbors.shape[1])
    width = int(neighbors.shape[2])
    ids = neighbors.astype("float64")
    ids[neighbors == NEIGHBOR_NODATA] = np.nan
    data = np.concatenate([estimates.astype("float64"), ids], axis=0)
    window = windows.Window(col_off=0, row_off=row_off, width=width, height=nrows)
    dst.write(data, window=window)
