from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pytest
import rasterio
from affine import Affine

UTM_TRANSFORM = Affine(10.0, 0.0, 500000.0, 0.0, -10.0, 4100000.0)


def _write(
    path: Path,
    data: np.ndarray,
    *,
    nodata: Optional[float] = None,
    transform: Affine = UTM_TRANSFORM,
    crs: str = "EPSG:32610",
    descriptions: Optional[Sequence[str]] = None,
) -> Path:
    arr = np.asarray(data, dtype="float32")
    if arr.ndim == 2:
        arr = arr[np.newaxis, :, :]
    profile = {
        "driver": "GTiff",
        "height": arr.shape[1],
        "width": arr.shape[2],
        "count": arr.shape[0],
        "dtype": "float32",
        "nodata": nodata,
        "transform": transform,
        "crs": crs,
    }
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(arr)
        for idx, name in enumerate(descriptions or [], start=1):
            dst.set_band_description(idx, name)
    return path


@pytest.fixture
def write_raster():
    return _write
