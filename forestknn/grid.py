"""Read-only grid abstractions: classified grids and predictor grids."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import rasterio
from affine import Affine
from rasterio import windows

from .errors import InvalidInputError, SchemaMismatchError

PathLike = Union[str, Path]
NodataLike = Optional[Union[float, Iterable[Optional[float]]]]


def _normalize_nodata(nodata_values: NodataLike, band_count: int) -> List[Optional[float]]:
    """Normalize nodata to a list per band."""

    if nodata_values is None:
        return [None] * band_count

    if isinstance(nodata_values, Iterable) and not isinstance(
        nodata_values, (str, bytes)
    ):
        nodata_list = list(nodata_values)
    else:
        nodata_list = [nodata_values]

    if len(nodata_list) == 1 and band_count > 1:
        nodata_list *= band_count
    elif len(nodata_list) < band_count:
        nodata_list.extend([None] * (band_count - len(nodata_list)))

    return nodata_list[:band_count]


def _mask_nodata(block: np.ndarray, nodata_per_band: Sequence[Optional[float]]) -> np.ndarray:
    """Replace per-band nodata values with NaN in a ``(bands, rows, cols)`` block."""

    for band_idx, nd_val in enumerate(nodata_per_band):
        if nd_val is None or np.isnan(nd_val):
            continue
        band = block[band_idx]
        band[band == nd_val] = np.nan
    return block


def _check_layer_names(names: Sequence[str], count: int) -> List[str]:
    names = [str(name) for name in names]
    if len(names) != count:
        raise InvalidInputError(
            f"Expected {count} layer names, got {len(names)}."
        )
    if len(set(names)) != len(names):
        raise InvalidInputError("Layer names must be unique.")
    return names


class GridIndex:
    """A 2-D grid of stratum ids with cell coordinates and validity.

    Cells holding NaN or ``nodata`` are invalid and never take part in
    sampling. Coordinates are cell centres under ``transform``; with the
    default identity transform they are plain grid units.
    """

    def __init__(
        self,
        strata: np.ndarray,
        *,
        transform: Optional[Affine] = None,
        crs=None,
        nodata: Optional[float] = None,
    ):
        arr = np.asarray(strata)
        if arr.ndim != 2:
            raise InvalidInputError("Stratum grid must be two-dimensional.")
        if not np.issubdtype(arr.dtype, np.number):
            raise InvalidInputError("Stratum grid must be numeric.")

        valid = np.ones(arr.shape, dtype=bool)
        if np.issubdtype(arr.dtype, np.floating):
            valid &= ~np.isnan(arr)
        if nodata is not None and not np.isnan(nodata):
            valid &= arr != nodata

        values = arr[valid]
        if values.size and not np.all(np.equal(np.mod(values, 1), 0)):
            raise InvalidInputError("Stratum ids must be integers.")

        ids = np.full(arr.shape, -1, dtype=np.int64)
        ids[valid] = values.astype(np.int64)
        self._ids = ids
        self._valid = valid
        self.transform = transform if transform is not None else Affine.identity()
        self.crs = crs

    @classmethod
    def from_raster(cls, path: PathLike, band: int = 1) -> "GridIndex":
        with rasterio.open(path) as src:
            data = src.read(band, out_dtype="float64")
            return cls(data, transform=src.transform, crs=src.crs, nodata=src.nodata)

    @property
    def shape(self) -> Tuple[int, int]:
        return self._ids.shape  # type: ignore[return-value]

    @property
    def height(self) -> int:
        return self._ids.shape[0]

    @property
    def width(self) -> int:
        return self._ids.shape[1]

    def valid_mask(self) -> np.ndarray:
        return self._valid.copy()

    def as_array(self) -> np.ndarray:
        """Stratum ids as float with NaN for invalid cells."""
        out = self._ids.astype("float64")
        out[~self._valid] = np.nan
        return out

    def stratum_ids(self) -> List[int]:
        return [int(v) for v in np.unique(self._ids[self._valid])]

    def frequencies(self) -> Dict[int, int]:
        ids, counts = np.unique(self._ids[self._valid], return_counts=True)
        return {int(i): int(c) for i, c in zip(ids, counts)}

    def cells(self, stratum: int) -> Tuple[np.ndarray, np.ndarray]:
        """Row and column indices of a stratum's valid cells in raster-scan order."""
        return np.nonzero(self._valid & (self._ids == int(stratum)))

    def xy(self, rows, cols) -> Tuple[np.ndarray, np.ndarray]:
        rows = np.atleast_1d(np.asarray(rows))
        cols = np.atleast_1d(np.asarray(cols))
        if rows.size == 0:
            return np.empty(0, dtype="float64"), np.empty(0, dtype="float64")
        xs, ys = rasterio.transform.xy(self.transform, rows, cols, offset="center")
        return np.asarray(xs, dtype="float64"), np.asarray(ys, dtype="float64")

    def to_raster(self, path: PathLike) -> Path:
        out_path = Path(path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        profile = {
            "driver": "GTiff",
            "height": self.height,
            "width": self.width,
            "count": 1,
            "dtype": "int32",
            "nodata": -1,
            "transform": self.transform,
            "crs": self.crs,
        }
        with rasterio.open(out_path, "w", **profile) as dst:
            dst.write(self._ids.astype("int32"), 1)
        return out_path


class PredictorGrid:
    """Base for predictor grids read in row bands.

    Subclasses provide ``_read_bands(band_indices, row_off, nrows)`` returning
    a float64 ``(bands, nrows, width)`` block in which nodata is NaN.
    """

    height: int
    width: int
    transform: Affine
    crs = None

    def __init__(self, layer_names: Sequence[str]):
        self._all_names = list(layer_names)
        self._order = list(range(len(self._all_names)))

    @property
    def layer_names(self) -> List[str]:
        return [self._all_names[idx] for idx in self._order]

    @property
    def count(self) -> int:
        return len(self._order)

    def select(self, names: Sequence[str]) -> "PredictorGrid":
        """Return a view with layers re-mapped by name, in ``names`` order."""
        lookup = {name: idx for idx, name in enumerate(self._all_names)}
        missing = [name for name in names if name not in lookup]
        if missing:
            raise SchemaMismatchError(
                "Predictor grid lacks layer(s) required by the model: "
                + ", ".join(str(name) for name in missing)
            )
        view = self._copy()
        view._order = [lookup[name] for name in names]
        return view

    def _copy(self) -> "PredictorGrid":
        clone = object.__new__(type(self))
        clone.__dict__.update(self.__dict__)
        clone._order = list(self._order)
        return clone

    def read_rows(self, row_off: int, nrows: int) -> np.ndarray:
        if row_off < 0 or nrows < 0 or row_off + nrows > self.height:
            raise InvalidInputError(
                f"Row range [{row_off}, {row_off + nrows}) outside grid of "
                f"{self.height} rows."
            )
        return self._read_bands(self._order, row_off, nrows)

    def _read_bands(self, band_indices: Sequence[int], row_off: int, nrows: int) -> np.ndarray:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def values_at(self, rows, cols) -> pd.DataFrame:
        """Predictor values at the given cells, one row per cell."""
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        if rows.shape != cols.shape:
            raise InvalidInputError("rows and cols must have the same length.")
        if rows.size and (
            rows.min() < 0 or rows.max() >= self.height
            or cols.min() < 0 or cols.max() >= self.width
        ):
            raise InvalidInputError("Sample cells fall outside the predictor grid.")

        out = np.full((rows.size, self.count), np.nan, dtype="float64")
        for row in np.unique(rows):
            hits = np.nonzero(rows == row)[0]
            block = self.read_rows(int(row), 1)
            out[hits] = block[:, 0, cols[hits]].T
        return pd.DataFrame(out, columns=self.layer_names)

    def profile(self) -> dict:
        return {
            "driver": "GTiff",
            "height": self.height,
            "width": self.width,
            "transform": self.transform,
            "crs": self.crs,
        }


class ArrayGrid(PredictorGrid):
    """In-memory predictor grid of shape ``(bands, rows, cols)``."""

    def __init__(
        self,
        data: np.ndarray,
        layer_names: Sequence[str],
        *,
        transform: Optional[Affine] = None,
        crs=None,
        nodata: NodataLike = None,
    ):
        arr = np.asarray(data)
        if arr.ndim == 2:
            arr = arr[np.newaxis, :, :]
        if arr.ndim != 3:
            raise InvalidInputError("Predictor array must have shape (bands, rows, cols).")
        if not np.issubdtype(arr.dtype, np.number):
            raise InvalidInputError("Predictor array must be numeric.")
        super().__init__(_check_layer_names(layer_names, arr.shape[0]))
        self.data = arr
        self.height = int(arr.shape[1])
        self.width = int(arr.shape[2])
        self.transform = transform if transform is not None else Affine.identity()
        self.crs = crs
        self.nodata_values = _normalize_nodata(nodata, arr.shape[0])

    def _read_bands(self, band_indices: Sequence[int], row_off: int, nrows: int) -> np.ndarray:
        block = self.data[list(band_indices), row_off : row_off + nrows, :].astype(
            "float64", copy=True
        )
        return _mask_nodata(block, [self.nodata_values[i] for i in band_indices])

    def values_at(self, rows, cols) -> pd.DataFrame:
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        if rows.shape != cols.shape:
            raise InvalidInputError("rows and cols must have the same length.")
        if rows.size and (
            rows.min() < 0 or rows.max() >= self.height
            or cols.min() < 0 or cols.max() >= self.width
        ):
            raise InvalidInputError("Sample cells fall outside the predictor grid.")
        values = self.data[self._order][:, rows, cols].astype("float64")
        values = _mask_nodata(
            values[:, :, np.newaxis], [self.nodata_values[i] for i in self._order]
        )[:, :, 0]
        return pd.DataFrame(values.T, columns=self.layer_names)


class RasterGrid(PredictorGrid):
    """Predictor grid stacked band-wise from co-registered rasters on disk.

    Datasets are opened lazily and dropped when pickled, so a grid can be
    handed to worker processes that reopen the files themselves.
    """

    def __init__(
        self,
        paths: Union[PathLike, Iterable[PathLike]],
        layer_names: Optional[Sequence[str]] = None,
    ):
        self.paths = _expand_raster_inputs(paths)
        self._datasets: List[rasterio.io.DatasetReader] = []
        self._band_map: List[Tuple[int, int]] = []
        self.nodata_values: List[Optional[float]] = []

        default_names: List[str] = []
        with rasterio.open(self.paths[0]) as template:
            self.height = template.height
            self.width = template.width
            self.transform = template.transform
            self.crs = template.crs

        for ds_idx, path in enumerate(self.paths):
            with rasterio.open(path) as ds:
                if (ds.width, ds.height) != (self.width, self.height):
                    raise InvalidInputError("All rasters must have the same dimensions.")
                if not np.allclose(ds.transform, self.transform):
                    raise InvalidInputError("All rasters must share the same transform/grid.")
                if self.crs is not None and ds.crs is not None and ds.crs != self.crs:
                    raise InvalidInputError("All rasters must share the same CRS.")
                self.nodata_values.extend(_normalize_nodata(ds.nodatavals, ds.count))
                for band_idx in range(1, ds.count + 1):
                    self._band_map.append((ds_idx, band_idx))
                    description = ds.descriptions[band_idx - 1]
                    if description:
                        default_names.append(description)
                    elif ds.count == 1:
                        default_names.append(Path(path).stem)
                    else:
                        default_names.append(f"{Path(path).stem}_{band_idx}")

        names = layer_names if layer_names is not None else default_names
        super().__init__(_check_layer_names(names, len(self._band_map)))

    def __enter__(self) -> "RasterGrid":
        self._ensure_open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __getstate__(self):
        state = self.__dict__.copy()
        state["_datasets"] = []
        return state

    def _ensure_open(self) -> None:
        if not self._datasets:
            self._datasets = [rasterio.open(p) for p in self.paths]

    def close(self) -> None:
        for ds in self._datasets:
            ds.close()
        self._datasets = []

    def _copy(self) -> "PredictorGrid":
        clone = super()._copy()
        clone._datasets = []
        return clone

    def _read_bands(self, band_indices: Sequence[int], row_off: int, nrows: int) -> np.ndarray:
        self._ensure_open()
        window = windows.Window(col_off=0, row_off=row_off, width=self.width, height=nrows)
        out = np.empty((len(band_indices), nrows, self.width), dtype="float64")
        read_plan: Dict[int, List[Tuple[int, int]]] = {}
        for out_idx, stack_idx in enumerate(band_indices):
            ds_idx, band_idx = self._band_map[stack_idx]
            read_plan.setdefault(ds_idx, []).append((out_idx, band_idx))

        for ds_idx, selections in read_plan.items():
            ds = self._datasets[ds_idx]
            band_ids = [band_idx for _, band_idx in selections]
            data = ds.read(indexes=band_ids, window=window, out_dtype="float64")
            if data.ndim == 2:
                data = data[np.newaxis, :, :]
            for local_idx, (out_idx, _) in enumerate(selections):
                out[out_idx] = data[local_idx]

        return _mask_nodata(out, [self.nodata_values[i] for i in band_indices])


def _expand_raster_inputs(image_path: Union[PathLike, Iterable[PathLike]]) -> List[Path]:
    """Normalize raster inputs to a list of Paths.

    Accepts a single file/VRT, a directory (expands *.tif / *.tiff), or an
    iterable of mixed paths.
    """

    paths: List[Path] = []

    def add_path(p: Path) -> None:
        if p.is_dir():
            candidates = sorted([*p.glob("*.tif"), *p.glob("*.tiff")])
            if not candidates:
                raise InvalidInputError(f"No GeoTIFFs found in directory: {p}")
            paths.extend(candidates)
        elif p.is_file():
            paths.append(p)
        else:
            raise InvalidInputError(f"Raster path not found: {p}")

    if isinstance(image_path, Iterable) and not isinstance(image_path, (str, bytes, Path)):
        for item in image_path:
            add_path(Path(item))
    else:
        add_path(Path(image_path))  # type: ignore[arg-type]

    if not paths:
        raise InvalidInputError("No raster paths were provided.")
    return paths


def as_predictor_grid(source, layer_names: Optional[Sequence[str]] = None) -> PredictorGrid:
    """Validate a predictor source at the boundary.

    Accepts a :class:`PredictorGrid`, raster path(s), or a numpy array with
    ``layer_names``.
    """

    if isinstance(source, PredictorGrid):
        return source
    if isinstance(source, np.ndarray):
        if layer_names is None:
            raise InvalidInputError("layer_names are required for array predictors.")
        return ArrayGrid(source, layer_names)
    if isinstance(source, (str, Path)) or (
        isinstance(source, Iterable) and not isinstance(source, (bytes, dict))
    ):
        return RasterGrid(source, layer_names=layer_names)
    raise InvalidInputError(
        f"Unsupported predictor source of type {type(source).__name__}."
    )
