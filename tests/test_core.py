import numpy as np
import pandas as pd
import pytest
import rioxarray

import sudanet.core as core
from sudanet.config import AnalysisConfig
from sudanet.core import ETDroughtAnalysis, aggregate_monthly
from sudanet.methods import DROUGHT_CLASS_NODATA
from sudanet.sources import LocalRasterSource


def test_aggregate_monthly_constant_frames(make_stack, regions):
    times = pd.date_range('2001-01-01', '2001-03-31', freq='8D')
    raw = make_stack(np.full((len(times), 4, 4), 400.0), times)

    series = aggregate_monthly(
        LocalRasterSource(raw, name='ET'),
        factor=0.0125,
        boundary=regions.boundary,
    )

    assert series.sizes['time'] == 3
    np.testing.assert_allclose(series.values, 5.0)
    assert series['year'].values.tolist() == [2001, 2001, 2001]
    assert series['month'].values.tolist() == [1, 2, 3]


def test_aggregate_monthly_windows_follow_raw_timestamps(make_stack):
    times = pd.to_datetime(['2000-02-18', '2000-03-05', '2000-05-30'])
    raw = make_stack(np.ones((3, 4, 4)), times)

    series = aggregate_monthly(LocalRasterSource(raw))

    expected = pd.to_datetime(['2000-02-01', '2000-03-01', '2000-04-01', '2000-05-01'])
    assert pd.DatetimeIndex(series['time'].values).equals(expected)


def test_aggregate_monthly_empty_month_is_nodata(make_stack):
    times = pd.to_datetime(['2001-01-05', '2001-01-20', '2001-03-10'])
    values = np.stack([np.full((4, 4), v) for v in (2.0, 4.0, 7.0)])
    raw = make_stack(values, times)

    series = aggregate_monthly(LocalRasterSource(raw))

    assert series.sizes['time'] == 3
    np.testing.assert_allclose(series.isel(time=0).values, 3.0)
    assert np.isnan(series.isel(time=1).values).all()
    np.testing.assert_allclose(series.isel(time=2).values, 7.0)


def test_aggregate_monthly_sum_reducer(make_stack):
    times = pd.date_range('2001-01-01', '2001-02-28', freq='D')
    raw = make_stack(np.ones((len(times), 4, 4)), times, name='precipitation')
    raw[0, 0, 0] = np.nan

    series = aggregate_monthly(LocalRasterSource(raw), reducer='sum')

    assert series.isel(time=0).values[1, 1] == pytest.approx(31.0)
    assert series.isel(time=0).values[0, 0] == pytest.approx(30.0)
    assert series.isel(time=1).values[1, 1] == pytest.approx(28.0)


def test_aggregate_monthly_clips_to_boundary(make_stack):
    from shapely.geometry import box

    times = pd.date_range('2001-01-01', periods=4, freq='8D')
    raw = make_stack(np.ones((4, 4, 4)), times)

    series = aggregate_monthly(LocalRasterSource(raw), boundary=box(30, 13, 31, 15))

    values = series.isel(time=0).values
    assert np.isfinite(values[:, :2]).all()
    assert np.isnan(values[:, 2:]).all()


def test_aggregate_monthly_parallel_matches_sequential(make_stack, varying_values):
    times = pd.date_range('2001-01-01', periods=24, freq='15D')
    raw = make_stack(varying_values, times)
    source = LocalRasterSource(raw)

    sequential = aggregate_monthly(source, factor=2.0)
    parallel = aggregate_monthly(source, factor=2.0, n_workers=2)

    np.testing.assert_allclose(parallel.values, sequential.values)


def test_aggregate_monthly_rejects_unknown_reducer(make_stack):
    raw = make_stack(np.ones((2, 4, 4)), pd.date_range('2001-01-01', periods=2, freq='8D'))
    with pytest.raises(ValueError):
        aggregate_monthly(LocalRasterSource(raw), reducer='median')


def _constant_analysis(make_stack, regions):
    times = pd.date_range('2001-01-01', periods=24, freq='MS')
    raw = make_stack(np.full((24, 4, 4), 5.0), times)
    config = AnalysisConfig(start_year=2001, end_year=2002, et_scale_factor=1.0)
    return ETDroughtAnalysis(config, regions, LocalRasterSource(raw, name='ET'))


def test_constant_series_example(make_stack, regions):
    result = _constant_analysis(make_stack, regions).run()

    zonal = result.zonal_stats.set_index('ADM1_NAME')
    assert list(zonal.index) == ['West', 'East']
    np.testing.assert_allclose(zonal['mean'], 5.0)
    np.testing.assert_allclose(zonal['stdDev'], 0.0)

    assert np.isnan(result.seti['SETI'].values).all()
    assert (result.seti['drought_class'].values == DROUGHT_CLASS_NODATA).all()
    assert np.isnan(result.seti_mosaic['SETI'].values).all()

    annual = result.annual_stats.set_index('year')
    np.testing.assert_allclose(annual.loc[2001, ['mean_ET', 'min_ET', 'max_ET']], 5.0)
    assert annual.loc[2002, 'stdDev_ET'] == pytest.approx(0.0)

    assert len(result.time_series) == 24
    assert result.correlation is None


def test_run_with_precipitation(make_stack, regions, varying_values):
    times = pd.date_range('2001-01-01', periods=24, freq='MS')
    et = make_stack(varying_values, times)
    precip_days = pd.date_range('2001-01-01', '2002-12-31', freq='D')
    month_index = np.asarray((precip_days.year - 2001) * 12 + precip_days.month - 1)
    days_in_month = np.asarray(precip_days.days_in_month)[:, None, None]
    precip_values = np.asarray(varying_values)[month_index] / days_in_month
    precip = make_stack(precip_values, precip_days, name='precipitation')

    config = AnalysisConfig(start_year=2001, end_year=2002, et_scale_factor=1.0)
    analysis = ETDroughtAnalysis(
        config, regions,
        LocalRasterSource(et, name='ET'),
        LocalRasterSource(precip, name='precipitation'),
    )
    result = analysis.run()

    assert result.monthly_precip.sizes['time'] == 24
    np.testing.assert_allclose(result.correlation.values, 1.0, atol=1e-4)
    assert result.trend.dims == ('y', 'x')
    assert np.isfinite(result.trend.values).all()


def test_export_writes_all_products(tmp_path, make_stack, regions, varying_values):
    times = pd.date_range('2001-01-01', periods=24, freq='MS')
    raw = make_stack(varying_values, times)
    config = AnalysisConfig(start_year=2001, end_year=2002, et_scale_factor=1.0)
    analysis = ETDroughtAnalysis(config, regions, LocalRasterSource(raw, name='ET'))

    report = analysis.process_sequential(tmp_path, netcdf=True, plots=True)

    assert report.ok
    names = analysis.output_names()
    for product in ('admin1_stats', 'monthly_time_series', 'trend', 'seti_drought_class',
                    'annual_stats', 'mean_et', 'netcdf', 'time_series_plot',
                    'mean_et_plot', 'drought_plot'):
        assert (tmp_path / names[product]).exists(), product
    assert 'et_precip_correlation' not in report.written

    ts = pd.read_csv(tmp_path / names['monthly_time_series'])
    assert list(ts.columns) == ['date', 'ET_mean', 'month', 'year']
    annual = pd.read_csv(tmp_path / names['annual_stats'])
    assert list(annual.columns) == ['year', 'mean_ET', 'stdDev_ET', 'min_ET', 'max_ET']

    seti = rioxarray.open_rasterio(tmp_path / names['seti_drought_class'])
    assert seti.sizes['band'] == 2


def test_export_failure_does_not_block_other_products(tmp_path, monkeypatch, make_stack, regions):
    analysis = _constant_analysis(make_stack, regions)
    result = analysis.run()

    real_export = core.export_raster

    def failing_export(data, path, crs='EPSG:4326'):
        if 'Trend' in path.name:
            raise OSError('disk full')
        return real_export(data, path, crs)

    monkeypatch.setattr(core, 'export_raster', failing_export)
    report = analysis.export(result, tmp_path, plots=False)

    assert not report.ok
    assert list(report.failed) == ['trend']
    assert 'disk full' in report.failed['trend']
    assert set(report.written) == {
        'admin1_stats', 'monthly_time_series', 'seti_drought_class', 'annual_stats', 'mean_et'
    }
    assert not (tmp_path / analysis.output_names()['trend']).exists()


def _daily_precip(make_stack, start, end):
    days = pd.date_range(start, end, freq='D')
    return make_stack(np.ones((len(days), 4, 4)), days, name='precipitation')


def test_precipitation_follows_et_months(make_stack, regions, varying_values):
    times = pd.date_range('2001-01-01', periods=24, freq='MS')
    et = make_stack(varying_values, times)
    precip = _daily_precip(make_stack, '1995-01-01', '2002-12-31')
    config = AnalysisConfig(start_year=2001, end_year=2002, et_scale_factor=1.0)
    analysis = ETDroughtAnalysis(
        config, regions,
        LocalRasterSource(et, name='ET'),
        LocalRasterSource(precip, name='precipitation'),
    )

    monthly = analysis.monthly_precip()

    assert pd.DatetimeIndex(monthly['time'].values).equals(pd.DatetimeIndex(times))
    assert monthly.isel(time=0).values[1, 1] == pytest.approx(31.0)
    assert monthly.isel(time=13).values[1, 1] == pytest.approx(28.0)


def test_precipitation_overlapping_part_of_et(make_stack, regions, varying_values):
    times = pd.date_range('2001-01-01', periods=24, freq='MS')
    et = make_stack(varying_values, times)
    precip = _daily_precip(make_stack, '2001-07-01', '2003-06-30')
    config = AnalysisConfig(start_year=2001, end_year=2002, et_scale_factor=1.0)
    analysis = ETDroughtAnalysis(
        config, regions,
        LocalRasterSource(et, name='ET'),
        LocalRasterSource(precip, name='precipitation'),
    )

    result = analysis.run()

    assert result.correlation_error is None
    assert result.monthly_precip.sizes['time'] == 24
    assert np.isnan(result.monthly_precip.isel(time=0).values).all()
    assert result.correlation.dims == ('y', 'x')


def test_precipitation_failure_does_not_block_exports(tmp_path, make_stack, regions, varying_values):
    times = pd.date_range('2001-01-01', periods=24, freq='MS')
    et = make_stack(varying_values, times)
    precip = _daily_precip(make_stack, '2010-01-01', '2010-03-31')
    config = AnalysisConfig(start_year=2001, end_year=2002, et_scale_factor=1.0)
    analysis = ETDroughtAnalysis(
        config, regions,
        LocalRasterSource(et, name='ET'),
        LocalRasterSource(precip, name='precipitation'),
    )

    report = analysis.process_sequential(tmp_path, plots=False)

    assert not report.ok
    assert list(report.failed) == ['et_precip_correlation']
    assert set(report.written) == {
        'admin1_stats', 'monthly_time_series', 'trend', 'seti_drought_class', 'annual_stats', 'mean_et'
    }
    for name in report.written.values():
        assert name.exists()


def test_from_local_warns_when_scale_ignored(tmp_path, caplog, make_stack, regions, varying_values):
    times = pd.date_range('2001-01-01', periods=24, freq='MS')
    raw = make_stack(varying_values, times).drop_vars('spatial_ref')
    raw.attrs = {}
    raw.encoding = {}
    raw.to_dataset(name='ET').to_netcdf(tmp_path / 'et.nc')
    regions.national.to_file(tmp_path / 'adm0.geojson', driver='GeoJSON')
    regions.admin1.to_file(tmp_path / 'adm1.geojson', driver='GeoJSON')

    with caplog.at_level('WARNING', logger='sudanet.core'):
        analysis = ETDroughtAnalysis.from_local(
            AnalysisConfig(start_year=2001, end_year=2002),
            et_path=tmp_path / 'et.nc',
            boundary_path=tmp_path / 'adm0.geojson',
            admin1_path=tmp_path / 'adm1.geojson',
        )

    assert analysis.et_source.data.sizes['x'] == 4
    assert any('used as-is' in record.getMessage() for record in caplog.records)
