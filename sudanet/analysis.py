"""
Statistics, exports and figures for the monthly ET series.

This module provides:
- StatisticalAnalyzer: zonal, annual and time-series statistics
- Export helpers for CSV tables, GeoTIFF rasters and NetCDF
- Visualizer: static figures replacing the interactive map
"""

import logging
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional, Union

import geopandas as gpd
import numpy as np
import pandas as pd
import xarray as xr
import rioxarray  # noqa: F401  registers the .rio accessor
from rasterio.enums import Resampling

from .config import AnalysisConfig, DROUGHT_PALETTE, ET_PALETTE
from .methods import (
    DROUGHT_CLASS_LABELS,
    DROUGHT_CLASS_NODATA,
    calculate_mann_kendall,
    calculate_seti,
    mosaic_last_valid,
)
from .utils import Regions, clip_to_boundary

logger = logging.getLogger(__name__)

ZONAL_COLUMNS = ['mean', 'stdDev']
ANNUAL_COLUMNS = ['year', 'mean_ET', 'stdDev_ET', 'min_ET', 'max_ET']
TIME_SERIES_COLUMNS = ['date', 'ET_mean', 'month', 'year']


def _nan_stats(values: np.ndarray) -> Dict[str, float]:
    """Mean, population std, min and max of the finite values (NaN if none)."""
    values = np.asarray(values, dtype=np.float64)
    values = values[np.isfinite(values)]
    if values.size == 0:
        return {'mean': np.nan, 'stdDev': np.nan, 'min': np.nan, 'max': np.nan}
    return {
        'mean': float(values.mean()),
        'stdDev': float(values.std(ddof=0)),
        'min': float(values.min()),
        'max': float(values.max()),
    }


def _time_mean(series: xr.DataArray) -> xr.DataArray:
    """NaN-skipping mean over time without empty-slice warnings."""
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', category=RuntimeWarning)
        return series.mean(dim='time', skipna=True, keep_attrs=True)


class StatisticalAnalyzer:
    """
    Statistical analysis of a monthly ET series over the study area.

    Parameters
    ----------
    series : xr.DataArray
        Monthly ET (mm/day) with dims ``('time', 'y', 'x')`` and ``year`` /
        ``month`` coordinates along time.
    regions : Regions
        National boundary and admin-1 subdivisions.
    config : AnalysisConfig, optional
        Run configuration. Defaults are used when omitted.

    Examples
    --------
    >>> stats = StatisticalAnalyzer(monthly_et, regions, config)
    >>> zonal_df = stats.zonal_statistics()
    >>> annual_df = stats.annual_statistics()
    """

    def __init__(
        self,
        series: xr.DataArray,
        regions: Regions,
        config: Optional[AnalysisConfig] = None
    ):
        self.series = series.sortby('time')
        self.regions = regions
        self.config = config or AnalysisConfig()

    def mean_et(self) -> xr.DataArray:
        """Full-period mean ET per pixel."""
        mean = _time_mean(self.series)
        mean.name = 'ET_mean'
        return mean.drop_vars([c for c in ('year', 'month') if c in mean.coords])

    def masked_mean_et(self) -> xr.DataArray:
        """Full-period mean ET with non-positive pixels masked."""
        mean = self.mean_et()
        return mean.where(mean > 0)

    def seti(self) -> xr.Dataset:
        """SETI and drought class of every month."""
        return calculate_seti(self.series, self.config.thresholds)

    def seti_mosaic(self, seti: Optional[xr.Dataset] = None) -> xr.Dataset:
        """SETI and drought class of the latest valid month per pixel."""
        return mosaic_last_valid(seti if seti is not None else self.seti())

    def trend(self) -> xr.DataArray:
        """Mann-Kendall Z surface of the full series."""
        return calculate_mann_kendall(self.series)

    def zonal_statistics(self, raster: Optional[xr.DataArray] = None) -> pd.DataFrame:
        """
        Mean and population standard deviation of a raster per admin-1 region.

        Parameters
        ----------
        raster : xr.DataArray, optional
            2-D raster to reduce. Defaults to :meth:`mean_et`.

        Returns
        -------
        pd.DataFrame
            The admin-1 attribute columns plus ``mean`` and ``stdDev``.
            Regions that do not intersect the raster get NaN.
        """
        if raster is None:
            raster = self.mean_et()

        zones = self.regions.admin1
        attributes = pd.DataFrame(zones.drop(columns=zones.geometry.name))
        rows = []
        for record, geometry in zip(attributes.to_dict('records'), zones.geometry):
            clipped = clip_to_boundary(raster, geometry, self.config.crs, drop=True)
            stats = _nan_stats(clipped.values if clipped is not None else [])
            if np.isnan(stats['mean']):
                logger.warning(f"No valid pixels for region {record}")
            record.update({k: stats[k] for k in ZONAL_COLUMNS})
            rows.append(record)

        return pd.DataFrame(rows, columns=list(attributes.columns) + ZONAL_COLUMNS)

    def annual_statistics(
        self,
        start_year: Optional[int] = None,
        end_year: Optional[int] = None
    ) -> pd.DataFrame:
        """
        Statistics of each year's mean ET over the national boundary.

        Parameters
        ----------
        start_year, end_year : int, optional
            Inclusive year range. Defaults to the config's range.

        Returns
        -------
        pd.DataFrame
            Columns ``year, mean_ET, stdDev_ET, min_ET, max_ET``. Years
            without monthly frames have NaN statistics.
        """
        start_year = self.config.start_year if start_year is None else start_year
        end_year = self.config.end_year if end_year is None else end_year

        years = self.series['year'].values
        rows = []
        for year in range(start_year, end_year + 1):
            idx = np.flatnonzero(years == year)
            if idx.size == 0:
                logger.warning(f"No monthly ET frames for {year}; statistics set to no-data")
                stats = _nan_stats([])
            else:
                year_mean = _time_mean(self.series.isel(time=idx))
                clipped = clip_to_boundary(year_mean, self.regions.boundary, self.config.crs)
                stats = _nan_stats(clipped.values)
            rows.append({
                'year': year,
                'mean_ET': stats['mean'],
                'stdDev_ET': stats['stdDev'],
                'min_ET': stats['min'],
                'max_ET': stats['max'],
            })
        return pd.DataFrame(rows, columns=ANNUAL_COLUMNS)

    def monthly_time_series(self) -> pd.DataFrame:
        """
        National mean ET of every month.

        Returns
        -------
        pd.DataFrame
            Columns ``date`` (YYYY-MM-DD), ``ET_mean``, ``month``, ``year``.
        """
        clipped = clip_to_boundary(self.series, self.regions.boundary, self.config.crs)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', category=RuntimeWarning)
            means = clipped.mean(dim=('y', 'x'), skipna=True).values

        times = pd.DatetimeIndex(self.series['time'].values)
        return pd.DataFrame({
            'date': times.strftime('%Y-%m-%d'),
            'ET_mean': means.astype(np.float64),
            'month': self.series['month'].values.astype(int),
            'year': self.series['year'].values.astype(int),
        }, columns=TIME_SERIES_COLUMNS)

    def correlate_with_precipitation(self, precip: xr.DataArray) -> xr.DataArray:
        """
        Pearson correlation between monthly ET and precipitation per pixel.

        Precipitation is regridded to the ET grid (bilinear) and both series
        are restricted to their common months.

        Parameters
        ----------
        precip : xr.DataArray
            Monthly precipitation with dims ``('time', 'y', 'x')``.

        Returns
        -------
        xr.DataArray
            Correlation coefficient per pixel, named ``et_precip_r``.
        """
        template = self.series.isel(time=0, drop=True).drop_vars(['year', 'month'], errors='ignore')
        if template.rio.crs is None:
            template = template.rio.write_crs(self.config.crs)
        if precip.rio.crs is None:
            precip = precip.rio.write_crs(self.config.crs)

        same_grid = (
            precip.sizes.get('y') == template.sizes['y']
            and precip.sizes.get('x') == template.sizes['x']
            and np.allclose(precip['y'].values, template['y'].values)
            and np.allclose(precip['x'].values, template['x'].values)
        )
        if not same_grid:
            precip = precip.rio.reproject_match(template, resampling=Resampling.bilinear)
        precip = precip.assign_coords(y=template['y'].values, x=template['x'].values)

        et, precip = xr.align(
            self.series.drop_vars(['year', 'month'], errors='ignore'),
            precip.drop_vars(['year', 'month'], errors='ignore'),
            join='inner',
            exclude=['y', 'x'],
        )
        if et.sizes['time'] < 2:
            raise ValueError("At least two common months are required for correlation")

        with warnings.catch_warnings():
            warnings.simplefilter('ignore', category=RuntimeWarning)
            r = xr.corr(et, precip, dim='time')
        r.name = 'et_precip_r'
        r.attrs = {'long_name': 'pearson_correlation_et_precipitation', 'n_months': int(et.sizes['time'])}
        return r.astype(np.float32)


class ExportFailure(RuntimeError):
    """Raised when one output product cannot be written."""

    def __init__(self, product: str, path: Path, cause: Exception):
        self.product = product
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to export {product} to {path}: {cause}")


@dataclass
class ExportReport:
    """Outcome of an export batch."""

    written: Dict[str, Path] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary(self) -> str:
        total = len(self.written) + len(self.failed)
        return f"{len(self.written)}/{total} products exported"


def export_table(df: pd.DataFrame, output_path: Union[str, Path]) -> Path:
    """Write a table to CSV without the index."""
    output_path = Path(output_path)
    df.to_csv(output_path, index=False)
    return output_path


def export_raster(
    data: Union[xr.DataArray, xr.Dataset],
    output_path: Union[str, Path],
    crs: str = 'EPSG:4326'
) -> Path:
    """
    Write a 2-D raster (or a Dataset of 2-D rasters, one band each) to GeoTIFF.

    Integer drought classes are written as float32 with ``0`` turned into NaN
    so that every band shares the NaN no-data value.
    """
    output_path = Path(output_path)
    if isinstance(data, xr.Dataset):
        bands = {}
        for name, var in data.data_vars.items():
            if name == 'drought_class':
                var = var.where(var != DROUGHT_CLASS_NODATA)
            bands[name] = var.astype(np.float32)
        data = xr.Dataset(bands)
    else:
        data = data.astype(np.float32)

    drop = [c for c in ('time', 'year', 'month') if c in data.coords]
    data = data.drop_vars(drop)
    if data.rio.crs is None:
        data = data.rio.write_crs(crs)
    if isinstance(data, xr.Dataset):
        for name in data.data_vars:
            data[name] = data[name].rio.write_nodata(np.nan, encoded=False)
    else:
        data = data.rio.write_nodata(np.nan, encoded=False)

    data.rio.to_raster(output_path, compress='LZW')
    return output_path


def export_to_netcdf(
    datasets: Dict[str, xr.DataArray],
    output_path: Union[str, Path]
) -> Path:
    """
    Bundle monthly series into one NetCDF file.

    Parameters
    ----------
    datasets : dict
        Variable name -> DataArray sharing ``time``/``y``/``x`` coordinates.
    output_path : str or Path
        Output file.
    """
    output_path = Path(output_path)
    ds = xr.Dataset({name: da.drop_vars('spatial_ref', errors='ignore') for name, da in datasets.items()})
    ds.attrs['title'] = 'Monthly evapotranspiration analysis'
    ds.to_netcdf(output_path)
    return output_path


def write_product(name: str, writer: Callable[[Path], object], output_path: Path) -> Path:
    """
    Run one export writer, wrapping any error in :class:`ExportFailure`.
    """
    try:
        writer(output_path)
    except Exception as e:
        raise ExportFailure(name, output_path, e) from e
    logger.info(f"Exported {name}: {output_path.name}")
    return output_path


def export_products(
    products: Dict[str, Callable[[Path], object]],
    file_names: Dict[str, str],
    output_dir: Union[str, Path]
) -> ExportReport:
    """
    Write independent output products, continuing past failures.

    Parameters
    ----------
    products : dict
        Product name -> writer taking the output path.
    file_names : dict
        Product name -> file name inside ``output_dir``.
    output_dir : str or Path
        Output directory, created if needed.

    Returns
    -------
    ExportReport
        Written paths and failure messages per product.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    report = ExportReport()
    for name, writer in products.items():
        path = output_dir / file_names[name]
        try:
            report.written[name] = write_product(name, writer, path)
        except ExportFailure as e:
            logger.error(str(e))
            report.failed[name] = str(e.cause)

    if report.ok:
        logger.info(report.summary())
    else:
        logger.warning(f"{report.summary()}; failed: {sorted(report.failed)}")
    return report


class Visualizer:
    """
    Static figures of the ET analysis.

    Parameters
    ----------
    boundary : shapely geometry, optional
        Outline drawn on map figures.
    crs : str, optional
        CRS of the outline. Default is 'EPSG:4326'.
    """

    def __init__(self, boundary=None, crs: str = 'EPSG:4326'):
        self.boundary = boundary
        self.crs = crs

    def _draw_boundary(self, ax) -> None:
        if self.boundary is not None:
            gpd.GeoSeries([self.boundary], crs=self.crs).boundary.plot(
                ax=ax, color='black', linewidth=1
            )

    def plot_time_series(
        self,
        time_series: pd.DataFrame,
        output_path: Union[str, Path],
        title: str = 'Evapotranspiration in Sudan (MODIS 500m)'
    ) -> Path:
        """
        Plot the national monthly ET mean with a linear trend line.
        """
        import matplotlib.pyplot as plt

        df = time_series.dropna(subset=['ET_mean'])
        dates = pd.to_datetime(df['date'])

        output_path = Path(output_path)
        fig, ax = plt.subplots(figsize=(12, 5))
        try:
            ax.plot(dates, df['ET_mean'], color='#2c7fb8', linewidth=1.5, marker='o', markersize=2)

            if len(df) >= 2:
                x = dates.map(pd.Timestamp.toordinal).to_numpy(dtype=float)
                slope, intercept = np.polyfit(x, df['ET_mean'].to_numpy(dtype=float), 1)
                ax.plot(dates, slope * x + intercept, color='red', linewidth=1, label='Linear trend')
                ax.legend(loc='upper left')

            ax.set_ylim(bottom=0)
            ax.set_xlabel('Date')
            ax.set_ylabel('Average ET (mm/day)')
            ax.set_title(title)
            ax.grid(True, alpha=0.3)

            fig.tight_layout()
            fig.savefig(output_path, dpi=150, bbox_inches='tight')
        finally:
            plt.close(fig)
        return output_path

    def plot_mean_et(
        self,
        mean_et: xr.DataArray,
        output_path: Union[str, Path],
        title: str = 'Mean Evapotranspiration',
        vmin: float = 0.0,
        vmax: Optional[float] = None
    ) -> Path:
        """
        Map the full-period mean ET with the ET palette.

        ``vmax`` defaults to the 98th percentile of the valid pixels.
        """
        import matplotlib.pyplot as plt
        from matplotlib.colors import LinearSegmentedColormap

        if vmax is None:
            valid = mean_et.values[np.isfinite(mean_et.values)]
            vmax = float(np.percentile(valid, 98)) if valid.size else 1.0

        cmap = LinearSegmentedColormap.from_list('et', list(ET_PALETTE))
        output_path = Path(output_path)
        fig, ax = plt.subplots(figsize=(10, 8))
        try:
            mean_et.plot(ax=ax, cmap=cmap, vmin=vmin, vmax=vmax,
                         cbar_kwargs={'label': 'ET (mm/day)'})
            self._draw_boundary(ax)
            ax.set_title(title)
            ax.set_xlabel('Longitude')
            ax.set_ylabel('Latitude')

            fig.tight_layout()
            fig.savefig(output_path, dpi=150, bbox_inches='tight')
        finally:
            plt.close(fig)
        return output_path

    def plot_drought_class(
        self,
        drought_class: xr.DataArray,
        output_path: Union[str, Path],
        title: str = 'Drought Classification (SETI)'
    ) -> Path:
        """
        Map drought classes 1-4 with the drought palette and a legend.
        """
        import matplotlib.pyplot as plt
        from matplotlib.colors import BoundaryNorm, ListedColormap
        from matplotlib.patches import Patch

        cmap = ListedColormap(list(DROUGHT_PALETTE))
        norm = BoundaryNorm([0.5, 1.5, 2.5, 3.5, 4.5], cmap.N)
        classes = drought_class.where(drought_class != DROUGHT_CLASS_NODATA)

        output_path = Path(output_path)
        fig, ax = plt.subplots(figsize=(10, 8))
        try:
            classes.plot(ax=ax, cmap=cmap, norm=norm, add_colorbar=False)
            self._draw_boundary(ax)
            handles = [
                Patch(facecolor=color, edgecolor='grey', label=DROUGHT_CLASS_LABELS[i + 1])
                for i, color in enumerate(DROUGHT_PALETTE)
            ]
            ax.legend(handles=handles, title='Drought', loc='lower left')
            ax.set_title(title)
            ax.set_xlabel('Longitude')
            ax.set_ylabel('Latitude')

            fig.tight_layout()
            fig.savefig(output_path, dpi=150, bbox_inches='tight')
        finally:
            plt.close(fig)
        return output_path
