"""Tests for band-wise imputation."""

from __future__ import annotations

import threading

import numpy as np
import pandas as pd
import pytest
import rasterio

from forestknn import imputation
from forestknn.config import ImputeConfig
from forestknn.errors import (
    InvalidInputError,
    PartialComputeError,
    PartialComputeWarning,
    SchemaMismatchError,
)
from forestknn.grid import ArrayGrid, RasterGrid
from forestknn.imputation import (
    NEIGHBOR_NODATA,
    band_windows,
    impute,
    impute_from_config,
    impute_to_raster,
)
from forestknn.model import NearnessModel


def _predictor_grid(height: int = 133, width: int = 134) -> ArrayGrid:
    rows, cols = np.mgrid[0:height, 0:width]
    elev = (rows * 3.0 + cols * 0.5).astype("float64")
    ndvi = np.sin(rows / 7.0) * np.cos(cols / 5.0)
    elev[5, 7] = np.nan
    ndvi[height // 2, width - 3] = np.nan
    elev[height - 1, :10] = np.nan
    return ArrayGrid(np.stack([elev, ndvi]), ["elev", "ndvi"])


def _fit(grid: ArrayGrid, method: str = "euclidean", k: int = 2) -> NearnessModel:
    rng = np.random.default_rng(0)
    rows = rng.integers(0, grid.height - 1, 60)
    cols = rng.integers(0, grid.width, 60)
    features = grid.values_at(rows, cols)
    keep = features.notna().all(axis=1).to_numpy()
    features = features[keep].reset_index(drop=True)
    responses = pd.DataFrame(
        {"height": features["elev"] * 0.1 + 5, "cover": features["ndvi"] + 1}
    )
    return NearnessModel(method, k=k, n_trees=10, random_state=0).fit(features, responses)


def _assert_same(left, right):
    assert np.array_equal(left.estimates, right.estimates, equal_nan=True)
    assert np.array_equal(left.neighbors, right.neighbors)


def test_band_windows_cover_rows_without_overlap():
    assert band_windows(25, 10) == [(0, 10), (10, 10), (20, 5)]
    assert band_windows(3, 10) == [(0, 3)]
    with pytest.raises(InvalidInputError):
        band_windows(3, 0)


@pytest.mark.parametrize("chunk_rows", [1, 10, None])
@pytest.mark.parametrize("method", ["euclidean", "randomForest"])
def test_output_does_not_depend_on_chunk_rows(method, chunk_rows):
    grid = _predictor_grid()
    model = _fit(grid, method)

    whole = impute(model, grid, chunk_rows=grid.height).grid
    banded = impute(model, grid, chunk_rows=chunk_rows)

    assert whole.shape == (133, 134)
    assert banded.bands[0][1] == (chunk_rows or grid.height)
    _assert_same(whole, banded.grid)


def test_default_bands_are_bounded():
    grid = _predictor_grid(600, 8)
    model = _fit(grid)

    sequential = impute(model, grid)
    parallel = impute(model, grid, parallel_workers=2, executor="thread")

    assert sequential.bands == [(0, 256), (256, 256), (512, 88)]
    assert max(nrows for _, nrows in parallel.bands) == 256
    _assert_same(sequential.grid, parallel.grid)


def test_thread_workers_match_sequential_result():
    grid = _predictor_grid()
    model = _fit(grid)

    sequential = impute(model, grid, chunk_rows=17).grid
    threaded = impute(model, grid, chunk_rows=9, parallel_workers=3, executor="thread")

    assert threaded.complete
    assert len(threaded.bands) == 15
    _assert_same(sequential, threaded.grid)


def test_process_workers_match_sequential_result():
    grid = _predictor_grid(40, 30)
    model = _fit(grid)

    sequential = impute(model, grid).grid
    parallel = impute(model, grid, parallel_workers=2, executor="process")

    assert parallel.bands == [(0, 20), (20, 20)]
    _assert_same(sequential, parallel.grid)


def test_progress_bar_runs_without_refresh_thread():
    before = threading.active_count()
    with imputation._progress(True, 2) as advance:
        assert threading.active_count() == before
        advance()
        advance()


def test_process_workers_with_progress_bar():
    grid = _predictor_grid(40, 30)
    model = _fit(grid)

    sequential = impute(model, grid).grid
    parallel = impute(
        model, grid, chunk_rows=10, parallel_workers=2, executor="process", progress=True
    )

    assert parallel.complete
    _assert_same(sequential, parallel.grid)


def test_missing_features_stay_no_data():
    grid = _predictor_grid()
    model = _fit(grid)
    result = impute(model, grid, chunk_rows=32).grid

    missing = np.isnan(grid.read_rows(0, grid.height)).any(axis=0)
    assert missing.sum() == 12
    assert np.isnan(result.estimates[:, missing]).all()
    assert (result.neighbors[:, missing] == NEIGHBOR_NODATA).all()
    assert np.isfinite(result.estimates[:, ~missing]).all()
    assert (result.neighbors[:, ~missing] >= 0).all()
    assert np.array_equal(result.valid_mask(), ~missing)


def test_band_predictions_match_direct_model_calls():
    grid = _predictor_grid(12, 9)
    model = _fit(grid)
    result = impute(model, grid, chunk_rows=5).grid

    values = grid.values_at([3, 8], [4, 2])
    estimates, ids = model.predict(values)
    assert result.band("height")[3, 4] == estimates[0, 0]
    assert result.band("cover")[8, 2] == estimates[1, 1]
    assert result.band("nn2")[8, 2] == ids[1, 1]
    assert result.band_names == ["height", "cover", "nn1", "nn2"]


def test_grid_layers_are_matched_by_name():
    grid = _predictor_grid(20, 20)
    model = _fit(grid)
    swapped = grid.select(["ndvi", "elev"])

    _assert_same(impute(model, grid).grid, impute(model, swapped).grid)


def test_schema_mismatch_fails_before_any_work():
    grid = _predictor_grid(20, 20)
    model = _fit(grid)

    renamed = ArrayGrid(grid.data, ["elevation", "ndvi"])
    with pytest.raises(SchemaMismatchError):
        impute(model, renamed)

    extra = ArrayGrid(np.concatenate([grid.data, grid.data[:1]]), ["elev", "ndvi", "slope"])
    with pytest.raises(SchemaMismatchError, match="slope"):
        impute(model, extra)
    result = impute(model, extra.select(["elev", "ndvi"]))
    assert result.complete


def test_failed_band_is_isolated(monkeypatch, caplog):
    grid = _predictor_grid(30, 8)
    model = _fit(grid)
    baseline = impute(model, grid).grid
    real_predict = imputation._predict_band

    def flaky(model, grid, row_off, nrows, k):
        if row_off == 10:
            raise RuntimeError("disk hiccup")
        return real_predict(model, grid, row_off, nrows, k)

    monkeypatch.setattr(imputation, "_predict_band", flaky)

    with caplog.at_level("ERROR", logger="forestknn.imputation"):
        with pytest.warns(PartialComputeWarning, match="1 of 3"):
            result = impute(model, grid, chunk_rows=10)

    assert not result.complete
    assert [(e.row_off, e.nrows) for e in result.errors] == [(10, 10)]
    assert "disk hiccup" in result.errors[0].error
    assert "Band failed" in caplog.text
    out = result.grid
    assert np.isnan(out.estimates[:, 10:20]).all()
    assert (out.neighbors[:, 10:20] == NEIGHBOR_NODATA).all()
    for rows in (slice(0, 10), slice(20, 30)):
        assert np.array_equal(
            out.estimates[:, rows], baseline.estimates[:, rows], equal_nan=True
        )


def test_failed_band_is_isolated_with_threads(monkeypatch):
    grid = _predictor_grid(30, 8)
    model = _fit(grid)
    baseline = impute(model, grid).grid
    real_predict = imputation._predict_band

    def flaky(model, grid, row_off, nrows, k):
        if row_off == 0:
            raise RuntimeError("boom")
        return real_predict(model, grid, row_off, nrows, k)

    monkeypatch.setattr(imputation, "_predict_band", flaky)
    with pytest.warns(PartialComputeWarning):
        result = impute(model, grid, chunk_rows=5, parallel_workers=2, executor="thread")

    assert [e.row_off for e in result.errors] == [0]
    assert np.isnan(result.grid.estimates[:, :5]).all()
    assert np.array_equal(
        result.grid.estimates[:, 5:], baseline.estimates[:, 5:], equal_nan=True
    )


def test_fail_fast_raises_partial_compute_error(monkeypatch):
    grid = _predictor_grid(30, 8)
    model = _fit(grid)

    def broken(model, grid, row_off, nrows, k):
        raise RuntimeError("boom")

    monkeypatch.setattr(imputation, "_predict_band", broken)
    with pytest.raises(PartialComputeError) as excinfo:
        impute(model, grid, chunk_rows=10, fail_fast=True)
    assert len(excinfo.value.errors) == 1


def test_unknown_executor_raises():
    grid = _predictor_grid(10, 10)
    model = _fit(grid)
    with pytest.raises(InvalidInputError, match="executor"):
        impute(model, grid, parallel_workers=2, executor="cluster")


def test_impute_to_raster_streams_bands(tmp_path, write_raster):
    grid = _predictor_grid(24, 16)
    model = _fit(grid)
    paths = [
        write_raster(tmp_path / "elev.tif", grid.data[0], nodata=np.nan),
        write_raster(tmp_path / "ndvi.tif", grid.data[1], nodata=np.nan),
    ]
    raster_grid = RasterGrid(paths)

    result = impute_to_raster(
        model, raster_grid, tmp_path / "out" / "imputed.tif", chunk_rows=7
    )
    assert result.complete
    in_memory = impute(model, RasterGrid(paths)).grid

    with rasterio.open(result.output_path) as src:
        assert src.count == 4
        assert list(src.descriptions) == ["height", "cover", "nn1", "nn2"]
        data = src.read()
    assert np.array_equal(data[:2], in_memory.estimates, equal_nan=True)
    ids = data[2:]
    assert np.array_equal(np.isnan(ids), in_memory.neighbors == NEIGHBOR_NODATA)
    assert np.array_equal(ids[~np.isnan(ids)], in_memory.neighbors[~np.isnan(ids)])


def test_prediction_grid_to_raster(tmp_path):
    grid = _predictor_grid(10, 8)
    model = _fit(grid, k=1)
    prediction = impute(model, grid).grid

    out = prediction.to_raster(tmp_path / "pred.vrt")
    assert out.suffix == ".tif"
    with rasterio.open(out) as src:
        assert src.count == 3
        assert src.descriptions[2] == "nn1"


def test_impute_from_config_uses_options():
    grid = _predictor_grid(20, 10)
    model = _fit(grid)
    config = ImputeConfig(chunk_rows=4, parallel_workers=2, executor="thread")
    result = impute_from_config(model, grid, config)
    assert len(result.bands) == 5
    _assert_same(result.grid, impute(model, grid).grid)
