import numpy as np
import pandas as pd
import pytest
import xarray as xr

from sudanet.sources import LocalRasterSource
from sudanet.utils import (
    clip_to_boundary,
    get_date_range,
    is_gee_asset,
    matches_scale,
    month_windows,
)


def test_fetch_returns_window_frames(make_stack):
    times = pd.to_datetime(['2001-01-01', '2001-01-09', '2001-02-02'])
    source = LocalRasterSource(make_stack(np.ones((3, 4, 4)), times))

    window = source.fetch('2001-01-01', '2001-02-01')

    assert window.sizes['time'] == 2
    assert source.fetch('2001-03-01', '2001-04-01') is None
    assert source.date_range() == (pd.Timestamp('2001-01-01'), pd.Timestamp('2001-02-02'))


def test_start_end_filter_raw_frames(make_stack):
    times = pd.date_range('2000-12-01', periods=4, freq='MS')
    source = LocalRasterSource(
        make_stack(np.ones((4, 4, 4)), times),
        start='2001-01-01', end='2001-03-01',
    )
    assert source.date_range() == (pd.Timestamp('2001-01-01'), pd.Timestamp('2001-02-01'))

    with pytest.raises(ValueError):
        LocalRasterSource(make_stack(np.ones((4, 4, 4)), times), start='2010-01-01')


def test_unsorted_frames_are_sorted(make_stack):
    times = pd.to_datetime(['2001-03-01', '2001-01-01', '2001-02-01'])
    source = LocalRasterSource(make_stack(np.arange(3.0)[:, None, None] * np.ones((3, 4, 4)), times))
    assert source.data['time'].to_index().is_monotonic_increasing
    assert float(source.data.isel(time=0).mean()) == pytest.approx(1.0)


def test_requires_time_dimension(make_stack):
    frame = make_stack(np.ones((1, 4, 4)), ['2001-01-01']).isel(time=0, drop=True)
    with pytest.raises(ValueError):
        LocalRasterSource(frame)


def test_from_netcdf_renames_lat_lon(tmp_path, make_stack):
    times = pd.date_range('2001-01-01', periods=3, freq='8D')
    stack = make_stack(np.full((3, 4, 4), 2.0), times).drop_vars('spatial_ref')
    stack.attrs = {}
    stack.encoding = {}
    stack.rename({'y': 'lat', 'x': 'lon'}).to_dataset(name='ET').to_netcdf(tmp_path / 'et.nc')

    source = LocalRasterSource.from_netcdf(tmp_path / 'et.nc', name='ET')

    assert source.data.dims == ('time', 'y', 'x')
    assert source.data.rio.crs is not None
    assert source.date_range()[1] == pd.Timestamp('2001-01-17')


def test_from_netcdf_requires_variable_choice(tmp_path, make_stack):
    times = pd.date_range('2001-01-01', periods=2, freq='8D')
    stack = make_stack(np.ones((2, 4, 4)), times).drop_vars('spatial_ref')
    stack.attrs = {}
    stack.encoding = {}
    xr.Dataset({'a': stack, 'b': stack}).to_netcdf(tmp_path / 'two.nc')

    with pytest.raises(ValueError):
        LocalRasterSource.from_netcdf(tmp_path / 'two.nc')
    source = LocalRasterSource.from_netcdf(tmp_path / 'two.nc', variable='b')
    assert source.data.sizes['time'] == 2


def test_from_geotiffs_parses_dates(tmp_path, make_stack):
    times = pd.to_datetime(['2001-01-01', '2001-01-09', '2001-02-02'])
    stack = make_stack(np.arange(3.0)[:, None, None] * np.ones((3, 4, 4)), times)
    for t, frame in zip(times, stack):
        frame.drop_vars('time').rio.to_raster(tmp_path / f"ET_{t:%Y%m%d}.tif")

    source = LocalRasterSource.from_geotiffs(tmp_path, pattern='ET_*.tif', name='ET')

    assert source.data.sizes['time'] == 3
    assert pd.DatetimeIndex(source.data['time'].values).equals(pd.DatetimeIndex(times))
    np.testing.assert_allclose(source.data.isel(time=2).values, 2.0)


def test_from_geotiffs_missing_directory_contents(tmp_path):
    with pytest.raises(FileNotFoundError):
        LocalRasterSource.from_geotiffs(tmp_path)


def test_month_windows_anchor_on_month_start():
    windows = month_windows('2000-02-18', '2000-04-30')
    assert [w[0] for w in windows] == list(pd.to_datetime(['2000-02-01', '2000-03-01', '2000-04-01']))
    assert windows[-1][1] == pd.Timestamp('2000-05-01')

    assert len(month_windows('2001-01-01', '2001-01-01')) == 1
    with pytest.raises(ValueError):
        month_windows('2001-02-01', '2001-01-01')


def test_get_date_range():
    assert get_date_range(2000, 2023) == ('2000-01-01', '2024-01-01')


@pytest.mark.parametrize('path, expected', [
    ('FAO/GAUL/2015/level1', True),
    ('projects/my-project/assets/sudan', True),
    ('boundary.geojson', False),
    ('./data/boundary', False),
    ('/abs/path/boundary', False),
    (None, False),
])
def test_is_gee_asset(path, expected):
    assert is_gee_asset(path) is expected


def test_clip_outside_geometry_is_nodata(make_stack):
    from shapely.geometry import box

    frame = make_stack(np.ones((1, 4, 4)), ['2001-01-01']).isel(time=0)
    outside = box(40, 0, 41, 1)

    assert clip_to_boundary(frame, outside, drop=True) is None
    assert np.isnan(clip_to_boundary(frame, outside).values).all()


def test_matches_scale(make_stack):
    frame = make_stack(np.ones((1, 4, 4)), ['2001-01-01']).isel(time=0)
    # 0.5 degree pixels are roughly 55 km at 14N
    assert not matches_scale(frame, 500.0)
    assert matches_scale(frame, 0.5 * 111320, tolerance=0.05)
