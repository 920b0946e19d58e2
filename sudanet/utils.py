"""
Utility functions for geometries, dates and GEE initialization.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

import ee
import geopandas as gpd
import numpy as np
import pandas as pd
import xarray as xr
import rioxarray  # noqa: F401  registers the .rio accessor
from rasterio.enums import Resampling
from rioxarray.exceptions import NoDataInBounds
from shapely.geometry import mapping
from shapely.ops import unary_union

logger = logging.getLogger(__name__)

# meters per degree of latitude
METERS_PER_DEGREE = 111320


def initialize_gee(project: Optional[str] = None) -> None:
    """
    Initialize Google Earth Engine, authenticating if required.

    Parameters
    ----------
    project : str, optional
        GEE project ID.
    """
    try:
        ee.Initialize(project=project)
        logger.info("GEE initialized successfully")
    except Exception:
        logger.info("Authenticating with GEE...")
        ee.Authenticate()
        ee.Initialize(project=project)
        logger.info("GEE initialized successfully")


def is_gee_asset(path: Union[str, Path, None]) -> bool:
    """
    Check whether a string looks like a GEE asset ID rather than a file path.

    Parameters
    ----------
    path : str or Path
        Candidate path or asset ID.

    Returns
    -------
    bool
        True for IDs such as 'FAO/GAUL/2015/level1' or
        'projects/my-project/assets/boundary'.
    """
    if path is None:
        return False
    path = str(path)
    if Path(path).exists() or Path(path).suffix:
        return False
    return '/' in path and not path.startswith(('.', '/', '~'))


@dataclass(frozen=True)
class Regions:
    """
    National boundary and admin-1 subdivisions of the study area.

    Parameters
    ----------
    national : gpd.GeoDataFrame
        Level-0 boundary (one or more polygons, unioned on use).
    admin1 : gpd.GeoDataFrame
        Level-1 subdivisions with their attribute columns.
    """

    national: gpd.GeoDataFrame
    admin1: gpd.GeoDataFrame

    @property
    def boundary(self):
        """Union of the national polygons as a shapely geometry."""
        return unary_union(list(self.national.geometry))

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """(min_lon, min_lat, max_lon, max_lat) of the national boundary."""
        return tuple(float(v) for v in self.national.total_bounds)

    @property
    def crs(self):
        return self.national.crs


def _gee_features_to_gdf(asset_id: str, country: Optional[str], crs: str) -> gpd.GeoDataFrame:
    """Download a (filtered) GEE FeatureCollection as a GeoDataFrame."""
    fc = ee.FeatureCollection(asset_id)
    if country is not None:
        fc = fc.filter(ee.Filter.eq('ADM0_NAME', country))
    features = fc.getInfo()['features']
    if not features:
        raise ValueError(f"No features found in {asset_id} for ADM0_NAME={country!r}")
    return gpd.GeoDataFrame.from_features(features, crs=crs)


def load_geometry(
    geometry_path: Optional[Union[str, Path]] = None,
    gee_asset: Optional[str] = None,
    country: Optional[str] = None,
    crs: str = 'EPSG:4326'
) -> gpd.GeoDataFrame:
    """
    Load boundary polygons from a local file or a GEE FeatureCollection.

    Parameters
    ----------
    geometry_path : str or Path, optional
        Shapefile, GeoJSON or GeoPackage. A GEE asset ID is also accepted.
    gee_asset : str, optional
        GEE FeatureCollection asset ID. Takes precedence over geometry_path.
    country : str, optional
        Keep only features whose ``ADM0_NAME`` equals this value.
    crs : str, optional
        CRS of the returned frame. Default is 'EPSG:4326'.

    Returns
    -------
    gpd.GeoDataFrame
        Boundary polygons.
    """
    if gee_asset is None and is_gee_asset(geometry_path):
        gee_asset = str(geometry_path)

    if gee_asset is not None:
        logger.info(f"Loading geometry from GEE asset: {gee_asset}")
        gdf = _gee_features_to_gdf(gee_asset, country, crs)
    elif geometry_path is not None:
        geometry_path = Path(geometry_path)
        if not geometry_path.exists():
            raise FileNotFoundError(f"Geometry file not found: {geometry_path}")
        logger.info(f"Loading geometry from file: {geometry_path}")
        gdf = gpd.read_file(geometry_path)
        if country is not None and 'ADM0_NAME' in gdf.columns:
            gdf = gdf[gdf['ADM0_NAME'] == country].reset_index(drop=True)
        if gdf.crs is None:
            gdf = gdf.set_crs(crs)
        else:
            gdf = gdf.to_crs(crs)
    else:
        raise ValueError("Either geometry_path or gee_asset must be provided")

    if gdf.empty:
        raise ValueError(f"No boundary polygons loaded for country={country!r}")
    return gdf


def load_regions(
    config,
    boundary_path: Optional[Union[str, Path]] = None,
    admin1_path: Optional[Union[str, Path]] = None
) -> Regions:
    """
    Load the national and admin-1 boundaries for ``config.country``.

    Local files are used when given, the GEE assets of the config otherwise.
    """
    national = load_geometry(
        boundary_path,
        gee_asset=None if boundary_path is not None else config.boundary_asset,
        country=config.country,
        crs=config.crs,
    )
    admin1 = load_geometry(
        admin1_path,
        gee_asset=None if admin1_path is not None else config.admin1_asset,
        country=config.country,
        crs=config.crs,
    )
    logger.info(f"Loaded {len(admin1)} admin-1 regions for {config.country}")
    return Regions(national=national, admin1=admin1)


def get_date_range(start_year: int, end_year: int) -> Tuple[str, str]:
    """
    Get the date range covering whole calendar years.

    Returns
    -------
    tuple
        (start_date, end_date) as 'YYYY-MM-DD' strings, end exclusive.
    """
    return f"{start_year}-01-01", f"{end_year + 1}-01-01"


def month_windows(start, end) -> List[Tuple[pd.Timestamp, pd.Timestamp]]:
    """
    Build calendar-month windows covering ``[start, end]``.

    The first window starts on the first day of the month containing
    ``start``; the last one contains ``end``.

    Parameters
    ----------
    start, end : datetime-like
        Earliest and latest raw timestamps.

    Returns
    -------
    list of tuple
        ``(month_start, next_month_start)`` pairs, end exclusive.
    """
    start = pd.Timestamp(start)
    end = pd.Timestamp(end)
    if end < start:
        raise ValueError(f"end ({end}) is before start ({start})")

    first = start.to_period('M').to_timestamp()
    last = end.to_period('M').to_timestamp()
    month_starts = pd.date_range(first, last, freq='MS')
    return [(m, m + pd.DateOffset(months=1)) for m in month_starts]


def meters_to_degrees(scale_meters: float, latitude: float = 0.0) -> Tuple[float, float]:
    """
    Convert a resolution in meters to degrees at a given latitude.

    Returns
    -------
    tuple
        (lon_degrees, lat_degrees).
    """
    lat_deg = scale_meters / METERS_PER_DEGREE
    lon_deg = scale_meters / (METERS_PER_DEGREE * np.cos(np.radians(latitude)))
    return float(lon_deg), float(lat_deg)


def _target_resolution(da: xr.DataArray, scale_meters: float) -> Tuple[float, float]:
    """Resolution (x, y) in the raster's CRS units matching ``scale_meters``."""
    crs = da.rio.crs
    if crs is None:
        raise ValueError("Raster has no CRS; cannot compare its resolution")
    if crs.is_geographic:
        return meters_to_degrees(scale_meters, float(da['y'].mean()))
    return scale_meters, scale_meters


def matches_scale(da: xr.DataArray, scale_meters: float, tolerance: float = 0.01) -> bool:
    """
    Check whether a raster's resolution is ``scale_meters`` within ``tolerance`` (relative).
    """
    target = _target_resolution(da, scale_meters)
    res_x, res_y = (abs(r) for r in da.rio.resolution())
    return abs(res_x - target[0]) <= tolerance * target[0] and abs(res_y - target[1]) <= tolerance * target[1]


def resample_to_scale(da: xr.DataArray, scale_meters: float, tolerance: float = 0.01) -> xr.DataArray:
    """
    Resample a raster to ``scale_meters`` when its resolution differs.

    Geographic rasters are converted with :func:`meters_to_degrees` at the
    raster's central latitude. Resolutions within ``tolerance`` (relative)
    are left untouched.
    """
    if matches_scale(da, scale_meters, tolerance):
        return da

    target = _target_resolution(da, scale_meters)
    res_x, res_y = (abs(r) for r in da.rio.resolution())
    logger.info(f"Resampling from ({res_x:.6f}, {res_y:.6f}) to ({target[0]:.6f}, {target[1]:.6f})")
    return da.rio.reproject(da.rio.crs, resolution=target, resampling=Resampling.average)


def clip_to_boundary(da: xr.DataArray, geometry, crs: str = 'EPSG:4326', drop: bool = False) -> xr.DataArray:
    """
    Mask a raster (or raster stack) to a polygon.

    Pixels outside ``geometry`` become NaN. A geometry that does not
    intersect the raster gives an all-NaN result (or ``None`` when
    ``drop`` is True) instead of raising.

    Parameters
    ----------
    da : xr.DataArray
        Raster with spatial dims ``y``/``x``.
    geometry : shapely geometry
        Clip polygon.
    crs : str, optional
        CRS of ``geometry`` and fallback CRS of ``da``.
    drop : bool, optional
        Crop to the geometry's bounding box. Default is False.

    Returns
    -------
    xr.DataArray or None
    """
    if da.rio.crs is None:
        da = da.rio.write_crs(crs)
    if not np.issubdtype(da.dtype, np.floating):
        da = da.astype(np.float32)
    try:
        return da.rio.clip([mapping(geometry)], crs, drop=drop, all_touched=False)
    except NoDataInBounds:
        logger.warning("Geometry does not intersect raster; returning no-data")
        if drop:
            return None
        return xr.full_like(da, np.nan)
