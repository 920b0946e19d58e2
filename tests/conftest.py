import matplotlib

matplotlib.use('Agg')

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
import rioxarray  # noqa: F401
import xarray as xr
from shapely.geometry import box

from sudanet.utils import Regions

# 4 x 4 grid of 0.5 degree pixels covering lon 30-32, lat 13-15
GRID_X = np.array([30.25, 30.75, 31.25, 31.75])
GRID_Y = np.array([14.75, 14.25, 13.75, 13.25])


def _stack(values, times, name='ET'):
    da = xr.DataArray(
        np.asarray(values, dtype=np.float32),
        dims=('time', 'y', 'x'),
        coords={'time': pd.DatetimeIndex(times), 'y': GRID_Y, 'x': GRID_X},
        name=name,
    )
    return da.rio.write_crs('EPSG:4326')


@pytest.fixture
def make_stack():
    """Build a (time, y, x) stack on the test grid."""
    return _stack


@pytest.fixture
def make_monthly():
    """Build a monthly series with year/month coordinates on the test grid."""
    def build(values, start='2001-01-01', name='ET'):
        values = np.asarray(values, dtype=np.float32)
        times = pd.date_range(start, periods=values.shape[0], freq='MS')
        da = _stack(values, times, name)
        return da.assign_coords(
            year=('time', times.year.values),
            month=('time', times.month.values),
        )
    return build


@pytest.fixture
def regions():
    national = gpd.GeoDataFrame(
        {'ADM0_NAME': ['Sudan']},
        geometry=[box(30, 13, 32, 15)],
        crs='EPSG:4326',
    )
    admin1 = gpd.GeoDataFrame(
        {'ADM0_NAME': ['Sudan', 'Sudan'], 'ADM1_NAME': ['West', 'East']},
        geometry=[box(30, 13, 31, 15), box(31, 13, 32, 15)],
        crs='EPSG:4326',
    )
    return Regions(national=national, admin1=admin1)


@pytest.fixture
def varying_values():
    """24 months of ET with a trend, a seasonal cycle and noise."""
    rng = np.random.default_rng(42)
    t = np.arange(24)[:, None, None]
    seasonal = 1.5 * np.sin(2 * np.pi * t / 12)
    return 3.0 + 0.05 * t + seasonal + rng.normal(0, 0.2, size=(24, 4, 4))
