"""
Core module for the monthly ET drought analysis.
"""

import logging
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Literal, Optional, Tuple, Union

import numpy as np
import pandas as pd
import xarray as xr
import rioxarray  # noqa: F401  registers the .rio accessor
from dask import delayed, compute
from dask.diagnostics import ProgressBar

from .analysis import (
    ExportReport,
    StatisticalAnalyzer,
    Visualizer,
    export_products,
    export_raster,
    export_table,
    export_to_netcdf,
)
from .config import AnalysisConfig
from .sources import GEERasterSource, LocalRasterSource, RasterSource
from .utils import (
    Regions,
    clip_to_boundary,
    get_date_range,
    initialize_gee,
    load_regions,
    matches_scale,
    month_windows,
)

logger = logging.getLogger(__name__)

Reducer = Literal['mean', 'sum']


def _reduce_window(
    source: RasterSource,
    start: pd.Timestamp,
    end: pd.Timestamp,
    factor: float,
    reducer: Reducer
) -> Optional[xr.DataArray]:
    """
    Reduce the raw frames of one month window to a single frame.

    Returns None when the window holds no raw frames.
    """
    raw = source.fetch(start, end)
    if raw is None or raw.sizes['time'] == 0:
        logger.warning(f"No {source.name} frames for {start:%Y-%m}; month set to no-data")
        return None

    with warnings.catch_warnings():
        warnings.simplefilter('ignore', category=RuntimeWarning)
        if reducer == 'mean':
            frame = raw.mean(dim='time', skipna=True)
        elif reducer == 'sum':
            frame = raw.sum(dim='time', skipna=True, min_count=1)
        else:
            raise ValueError(f"Unknown reducer: {reducer}")

    logger.debug(f"{source.name} {start:%Y-%m}: {reducer} of {raw.sizes['time']} frames")
    return (frame * factor).astype(np.float32)


def aggregate_monthly(
    source: RasterSource,
    factor: float = 1.0,
    reducer: Reducer = 'mean',
    boundary=None,
    crs: str = 'EPSG:4326',
    n_workers: Optional[int] = None,
    windows: Optional[List[Tuple[pd.Timestamp, pd.Timestamp]]] = None
) -> xr.DataArray:
    """
    Aggregate raw frames into one frame per calendar month.

    Months run from the month of the earliest raw timestamp through the
    month of the latest one. Each frame is the ``reducer`` of the raw
    frames in ``[month_start, month_start + 1 month)`` multiplied by
    ``factor`` and clipped to ``boundary``. Months without raw frames are
    kept as all-NaN frames.

    Parameters
    ----------
    source : RasterSource
        Raw frames.
    factor : float, optional
        Unit conversion applied after reduction. Default is 1.0.
    reducer : {'mean', 'sum'}, optional
        Temporal reducer. Default is 'mean'.
    boundary : shapely geometry, optional
        Clip polygon; no clipping when None.
    crs : str, optional
        CRS of ``boundary``. Default is 'EPSG:4326'.
    n_workers : int, optional
        Reduce months in parallel with dask using this many workers.
        Sequential when None or 1.
    windows : list of tuple, optional
        ``(month_start, next_month_start)`` windows to aggregate, e.g. those
        of another series. Derived from the source's own time span when None.

    Returns
    -------
    xr.DataArray
        Monthly frames with dims ``('time', 'y', 'x')`` and ``year`` /
        ``month`` coordinates along time.
    """
    if windows is None:
        windows = month_windows(*source.date_range())
    logger.info(
        f"Aggregating {source.name} into {len(windows)} months "
        f"({windows[0][0]:%Y-%m} to {windows[-1][0]:%Y-%m})"
    )

    if n_workers is not None and n_workers > 1:
        tasks = [
            delayed(_reduce_window)(source, m_start, m_end, factor, reducer)
            for m_start, m_end in windows
        ]
        with ProgressBar():
            frames = list(compute(*tasks, num_workers=n_workers, scheduler='threads'))
    else:
        frames = [
            _reduce_window(source, m_start, m_end, factor, reducer)
            for m_start, m_end in windows
        ]

    template = next((f for f in frames if f is not None), None)
    if template is None:
        raise ValueError(f"No {source.name} data in any month")
    missing = sum(f is None for f in frames)
    if missing:
        logger.warning(f"{missing}/{len(frames)} {source.name} months have no data")

    frames = [f if f is not None else xr.full_like(template, np.nan) for f in frames]
    month_starts = [m_start for m_start, _ in windows]
    series = xr.concat(frames, dim=pd.Index(month_starts, name='time'), join='override')
    series = series.assign_coords(
        year=('time', np.array([m.year for m in month_starts], dtype=np.int32)),
        month=('time', np.array([m.month for m in month_starts], dtype=np.int32)),
    )
    if series.rio.crs is None:
        series = series.rio.write_crs(crs)

    if boundary is not None:
        series = clip_to_boundary(series, boundary, crs)
    series.name = source.name
    return series


@dataclass
class AnalysisResult:
    """Derived products of one analysis run."""

    monthly_et: xr.DataArray
    mean_et: xr.DataArray
    masked_mean_et: xr.DataArray
    seti: xr.Dataset
    seti_mosaic: xr.Dataset
    trend: xr.DataArray
    zonal_stats: pd.DataFrame
    annual_stats: pd.DataFrame
    time_series: pd.DataFrame
    monthly_precip: Optional[xr.DataArray] = None
    correlation: Optional[xr.DataArray] = None
    correlation_error: Optional[str] = None


class ETDroughtAnalysis:
    """
    Monthly evapotranspiration drought analysis over a country.

    The analysis aggregates raw ET (and optionally precipitation) into
    monthly frames, derives the Standardized ET Index (SETI) and drought
    classes, the Mann-Kendall trend surface, zonal and annual statistics,
    and exports them.

    Parameters
    ----------
    config : AnalysisConfig
        Run configuration.
    regions : Regions
        National and admin-1 boundaries.
    et_source : RasterSource
        Raw ET frames (e.g., MODIS 8-day composites).
    precip_source : RasterSource, optional
        Raw daily precipitation frames. Skipped when None.

    Examples
    --------
    >>> from sudanet import ETDroughtAnalysis, AnalysisConfig
    >>> analysis = ETDroughtAnalysis.from_gee(AnalysisConfig(), gee_project='my-project')
    >>> report = analysis.process('./output', n_workers=4)
    """

    def __init__(
        self,
        config: AnalysisConfig,
        regions: Regions,
        et_source: RasterSource,
        precip_source: Optional[RasterSource] = None,
    ):
        self.config = config
        self.regions = regions
        self.et_source = et_source
        self.precip_source = precip_source

    @classmethod
    def from_gee(
        cls,
        config: AnalysisConfig,
        gee_project: Optional[str] = None,
        boundary_path: Optional[Union[str, Path]] = None,
        admin1_path: Optional[Union[str, Path]] = None,
        include_precip: bool = True,
        restrict_to_years: bool = False,
    ) -> 'ETDroughtAnalysis':
        """
        Build an analysis that downloads ET and precipitation from GEE.

        Parameters
        ----------
        config : AnalysisConfig
            Run configuration (asset IDs, bands, scale).
        gee_project : str, optional
            GEE project ID for authentication.
        boundary_path, admin1_path : str or Path, optional
            Local boundary files; the config's GEE assets are used otherwise.
        include_precip : bool, optional
            Also load precipitation. Default is True.
        restrict_to_years : bool, optional
            Only download images within ``[start_year, end_year]``. By
            default the whole collection is used.
        """
        initialize_gee(gee_project)
        regions = load_regions(config, boundary_path, admin1_path)

        start = end = None
        if restrict_to_years:
            start, end = get_date_range(config.start_year, config.end_year)

        et_source = GEERasterSource(
            config.et_asset, config.et_band, regions.bounds,
            scale=config.scale, crs=config.crs, start=start, end=end, name='ET',
        )
        precip_source = None
        if include_precip:
            # ET calendar months at native resolution; regridded onto the ET grid for correlation
            windows = month_windows(*et_source.date_range())
            precip_start = windows[0][0].strftime('%Y-%m-%d')
            precip_end = windows[-1][1].strftime('%Y-%m-%d')
            precip_source = GEERasterSource(
                config.precip_asset, config.precip_band, regions.bounds,
                scale=None, crs=config.crs, start=precip_start, end=precip_end,
                name='precipitation',
            )
        return cls(config, regions, et_source, precip_source)

    @classmethod
    def from_local(
        cls,
        config: AnalysisConfig,
        et_path: Union[str, Path],
        boundary_path: Union[str, Path],
        admin1_path: Union[str, Path],
        precip_path: Optional[Union[str, Path]] = None,
        resample: bool = False,
        restrict_to_years: bool = False,
    ) -> 'ETDroughtAnalysis':
        """
        Build an analysis from local files.

        Raster paths may be NetCDF files or directories of dated GeoTIFFs.
        """
        regions = load_regions(config, boundary_path, admin1_path)

        start = end = None
        if restrict_to_years:
            start, end = get_date_range(config.start_year, config.end_year)
        kwargs = {
            'crs': config.crs,
            'scale': config.scale if resample else None,
            'start': start,
            'end': end,
        }

        et_source = _open_local(et_path, name='ET', **kwargs)
        if not resample and not matches_scale(et_source.data, config.scale):
            res_x, res_y = (abs(r) for r in et_source.data.rio.resolution())
            logger.warning(
                f"Local ET resolution ({res_x:.6f}, {res_y:.6f}) differs from "
                f"scale={config.scale} m; rasters are used as-is (pass resample=True to resample)"
            )
        precip_source = None
        if precip_path is not None:
            kwargs['scale'] = None
            precip_source = _open_local(precip_path, name='precipitation', **kwargs)
        return cls(config, regions, et_source, precip_source)

    def et_windows(self) -> List[Tuple[pd.Timestamp, pd.Timestamp]]:
        """Calendar-month windows spanned by the raw ET frames."""
        return month_windows(*self.et_source.date_range())

    def monthly_et(self, n_workers: Optional[int] = None) -> xr.DataArray:
        """Monthly mean ET in mm/day, clipped to the national boundary."""
        return aggregate_monthly(
            self.et_source,
            factor=self.config.et_scale_factor,
            reducer='mean',
            boundary=self.regions.boundary,
            crs=self.config.crs,
            n_workers=n_workers,
            windows=self.et_windows(),
        ).rename('ET')

    def monthly_precip(self, n_workers: Optional[int] = None) -> Optional[xr.DataArray]:
        """
        Monthly precipitation totals in mm over the ET months, or None
        without a source.
        """
        if self.precip_source is None:
            return None
        return aggregate_monthly(
            self.precip_source,
            factor=self.config.precip_scale_factor,
            reducer='sum',
            boundary=self.regions.boundary,
            crs=self.config.crs,
            n_workers=n_workers,
            windows=self.et_windows(),
        ).rename('precipitation')

    def run(self, n_workers: Optional[int] = None) -> AnalysisResult:
        """
        Compute every derived product.

        Parameters
        ----------
        n_workers : int, optional
            Parallel workers for the monthly aggregation.

        Returns
        -------
        AnalysisResult
        """
        monthly_et = self.monthly_et(n_workers)
        stats = StatisticalAnalyzer(monthly_et, self.regions, self.config)

        logger.info("Computing SETI and drought classes...")
        seti = stats.seti()

        logger.info("Computing Mann-Kendall trend...")
        trend = stats.trend()

        logger.info("Computing zonal and annual statistics...")
        mean_et = stats.mean_et()
        result = AnalysisResult(
            monthly_et=monthly_et,
            mean_et=mean_et,
            masked_mean_et=mean_et.where(mean_et > 0),
            seti=seti,
            seti_mosaic=stats.seti_mosaic(seti),
            trend=trend,
            zonal_stats=stats.zonal_statistics(mean_et),
            annual_stats=stats.annual_statistics(),
            time_series=stats.monthly_time_series(),
        )

        if self.precip_source is not None:
            logger.info("Correlating ET with precipitation...")
            try:
                result.monthly_precip = self.monthly_precip(n_workers)
                result.correlation = stats.correlate_with_precipitation(result.monthly_precip)
            except Exception as e:
                logger.error(f"ET-precipitation correlation failed: {e}")
                result.correlation_error = str(e)

        return result

    def output_names(self) -> Dict[str, str]:
        """File name of every output product."""
        prefix = self.config.output_prefix
        return {
            'admin1_stats': f"{prefix}_ET_Admin1_Stats.csv",
            'monthly_time_series': f"{prefix}_ET_Monthly_TimeSeries.csv",
            'trend': f"{prefix}_ET_Trend_Analysis.tif",
            'seti_drought_class': f"{prefix}_SETI_and_DroughtClass.tif",
            'annual_stats': f"{prefix}_ET_Annual_Statistics.csv",
            'mean_et': f"{prefix}_Mean_ET_Raster.tif",
            'et_precip_correlation': f"{prefix}_ET_Precip_Correlation.tif",
            'netcdf': f"{prefix}_ET_Monthly.nc",
            'time_series_plot': f"{prefix}_ET_TimeSeries.png",
            'mean_et_plot': f"{prefix}_Mean_ET.png",
            'drought_plot': f"{prefix}_DroughtClass.png",
        }

    def export(
        self,
        result: AnalysisResult,
        output_dir: Union[str, Path],
        netcdf: bool = False,
        plots: bool = True
    ) -> ExportReport:
        """
        Write every product of ``result`` to ``output_dir``.

        Products are independent: a failure is logged and recorded in the
        returned report while the remaining products are still written. A
        correlation that could not be computed is reported as failed.
        """
        crs = self.config.crs
        products = {
            'admin1_stats': lambda p: export_table(result.zonal_stats, p),
            'monthly_time_series': lambda p: export_table(result.time_series, p),
            'trend': lambda p: export_raster(result.trend, p, crs),
            'seti_drought_class': lambda p: export_raster(result.seti_mosaic, p, crs),
            'annual_stats': lambda p: export_table(result.annual_stats, p),
            'mean_et': lambda p: export_raster(result.masked_mean_et, p, crs),
        }
        if result.correlation is not None:
            products['et_precip_correlation'] = lambda p: export_raster(result.correlation, p, crs)
        if netcdf:
            series = {'ET': result.monthly_et}
            if result.monthly_precip is not None:
                series['precipitation'] = result.monthly_precip
            products['netcdf'] = lambda p: export_to_netcdf(series, p)
        if plots:
            viz = Visualizer(self.regions.boundary, crs)
            products['time_series_plot'] = lambda p: viz.plot_time_series(result.time_series, p)
            products['mean_et_plot'] = lambda p: viz.plot_mean_et(result.masked_mean_et, p)
            products['drought_plot'] = lambda p: viz.plot_drought_class(
                result.seti_mosaic['drought_class'], p
            )

        report = export_products(products, self.output_names(), output_dir)
        if result.correlation_error is not None:
            report.failed['et_precip_correlation'] = result.correlation_error
            logger.warning(f"et_precip_correlation not exported: {result.correlation_error}")
        return report

    def process(
        self,
        output_dir: Union[str, Path],
        n_workers: int = 4,
        netcdf: bool = False,
        plots: bool = True
    ) -> ExportReport:
        """
        Run the analysis and export every product.

        Uses dask for parallel aggregation of the monthly windows.

        Parameters
        ----------
        output_dir : str or Path
            Directory to save outputs.
        n_workers : int, optional
            Number of parallel workers for dask. Default is 4.
        netcdf : bool, optional
            Also write the monthly series as NetCDF. Default is False.
        plots : bool, optional
            Also write PNG figures. Default is True.

        Returns
        -------
        ExportReport
        """
        result = self.run(n_workers=n_workers)
        return self.export(result, output_dir, netcdf=netcdf, plots=plots)

    def process_sequential(
        self,
        output_dir: Union[str, Path],
        netcdf: bool = False,
        plots: bool = True
    ) -> ExportReport:
        """
        Run the analysis sequentially (useful for debugging) and export it.
        """
        result = self.run(n_workers=None)
        return self.export(result, output_dir, netcdf=netcdf, plots=plots)


def _open_local(path: Union[str, Path], name: str, **kwargs) -> LocalRasterSource:
    """Open a NetCDF file or a directory of dated GeoTIFFs."""
    path = Path(path)
    if path.is_dir():
        return LocalRasterSource.from_geotiffs(path, name=name, **kwargs)
    if not path.exists():
        raise FileNotFoundError(f"Raster input not found: {path}")
    return LocalRasterSource.from_netcdf(path, name=name, **kwargs)
