"""
Raw raster sources feeding the monthly aggregation.

A source exposes the time span of its raw frames and returns the frames of
any ``[start, end)`` window as an ``xarray.DataArray`` with dims
``('time', 'y', 'x')``. :class:`GEERasterSource` downloads frames from a
Google Earth Engine ImageCollection; :class:`LocalRasterSource` serves them
from memory, a NetCDF file or a directory of dated GeoTIFFs.
"""

import logging
import re
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple, Union

import ee
import numpy as np
import pandas as pd
import xarray as xr
import rioxarray
from rioxarray.merge import merge_arrays

from .utils import METERS_PER_DEGREE, resample_to_scale

logger = logging.getLogger(__name__)

# Maximum pixels per tile for GEE sampleRectangle (conservative limit)
MAX_PIXELS_PER_TILE = 65536  # 256 x 256

# Fill value requested from GEE for masked pixels, converted to NaN locally
GEE_NODATA = -9999.0

DATE_PATTERN = re.compile(r'(\d{4})[-_]?(\d{2})[-_]?(\d{2})')


class RasterSource:
    """Base class of raw raster sources."""

    name = 'raster'

    def date_range(self) -> Tuple[pd.Timestamp, pd.Timestamp]:
        """Return the earliest and latest raw frame timestamps."""
        raise NotImplementedError

    def fetch(self, start, end) -> Optional[xr.DataArray]:
        """
        Return the raw frames with ``start <= time < end``.

        Returns None when the window holds no frames.
        """
        raise NotImplementedError


class LocalRasterSource(RasterSource):
    """
    Serve raw frames from an in-memory ``xarray.DataArray``.

    Parameters
    ----------
    data : xr.DataArray
        Raw frames with a ``time`` dimension and spatial dims ``y``/``x``.
    name : str, optional
        Label used in log messages.
    crs : str, optional
        CRS written when ``data`` carries none. Default is 'EPSG:4326'.
    scale : float, optional
        Resample to this resolution in meters when given.
    start, end : datetime-like, optional
        Ignore frames outside ``[start, end)``.
    """

    def __init__(
        self,
        data: xr.DataArray,
        name: str = 'raster',
        crs: str = 'EPSG:4326',
        scale: Optional[float] = None,
        start=None,
        end=None,
    ):
        if 'time' not in data.dims:
            raise ValueError("Raster data must have a 'time' dimension")
        data = data.sortby('time')
        if start is not None:
            data = data.isel(time=(data['time'] >= np.datetime64(pd.Timestamp(start))).values)
        if end is not None:
            data = data.isel(time=(data['time'] < np.datetime64(pd.Timestamp(end))).values)
        if data.sizes['time'] == 0:
            raise ValueError(f"No {name} frames in the requested period")
        if data.rio.crs is None:
            data = data.rio.write_crs(crs)
        if scale is not None:
            data = resample_to_scale(data, scale)

        self.name = name
        self.data = data.astype(np.float32)

    @classmethod
    def from_netcdf(
        cls,
        path: Union[str, Path],
        variable: Optional[str] = None,
        **kwargs
    ) -> 'LocalRasterSource':
        """
        Load raw frames from a NetCDF file.

        Parameters
        ----------
        path : str or Path
            NetCDF file with a ``time`` dimension.
        variable : str, optional
            Variable to read. Defaults to the only data variable.
        """
        ds = xr.open_dataset(path)
        if variable is None:
            if len(ds.data_vars) != 1:
                raise ValueError(
                    f"{path} holds {list(ds.data_vars)}; specify the variable to read"
                )
            variable = list(ds.data_vars)[0]
        da = ds[variable]
        rename = {k: v for k, v in (('lat', 'y'), ('latitude', 'y'), ('lon', 'x'), ('longitude', 'x')) if k in da.dims}
        if rename:
            da = da.rename(rename)
        return cls(da.load(), **kwargs)

    @classmethod
    def from_geotiffs(
        cls,
        directory: Union[str, Path],
        pattern: str = '*.tif',
        **kwargs
    ) -> 'LocalRasterSource':
        """
        Load raw frames from single-band GeoTIFFs whose names contain a date.

        The date is parsed from the first ``YYYYMMDD``, ``YYYY_MM_DD`` or
        ``YYYY-MM-DD`` found in each file name.
        """
        directory = Path(directory)
        files = sorted(directory.glob(pattern))
        if not files:
            raise FileNotFoundError(f"No rasters matching {pattern} in {directory}")

        frames = []
        times = []
        for f in files:
            match = DATE_PATTERN.search(f.stem)
            if match is None:
                logger.warning(f"Skipping {f.name}: no date in file name")
                continue
            times.append(pd.Timestamp(int(match.group(1)), int(match.group(2)), int(match.group(3))))
            frames.append(rioxarray.open_rasterio(f, masked=True).squeeze('band', drop=True))

        if not frames:
            raise ValueError(f"No dated rasters found in {directory}")

        da = xr.concat(frames, dim=pd.Index(times, name='time'))
        logger.info(f"Loaded {len(frames)} rasters from {directory}")
        return cls(da.load(), **kwargs)

    def date_range(self) -> Tuple[pd.Timestamp, pd.Timestamp]:
        times = self.data['time'].values
        return pd.Timestamp(times.min()), pd.Timestamp(times.max())

    def fetch(self, start, end) -> Optional[xr.DataArray]:
        t = self.data['time']
        mask = (t >= np.datetime64(pd.Timestamp(start))) & (t < np.datetime64(pd.Timestamp(end)))
        window = self.data.isel(time=mask.values)
        if window.sizes['time'] == 0:
            return None
        return window


class GEERasterSource(RasterSource):
    """
    Download raw frames from a GEE ImageCollection.

    Every image is reprojected to ``scale`` meters and sampled over the
    bounding box of the study area, in tiles when the box is large.

    Parameters
    ----------
    asset_id : str
        GEE ImageCollection asset ID (e.g., 'MODIS/061/MOD16A2GF').
    band : str
        Band to download.
    bounds : tuple
        (min_lon, min_lat, max_lon, max_lat) of the study area.
    scale : float, optional
        Output resolution in meters. Default is native resolution (None).
    crs : str, optional
        Output CRS. Default is 'EPSG:4326'.
    start, end : str, optional
        Restrict the collection to ``[start, end)``.
    name : str, optional
        Label used in log messages.
    """

    def __init__(
        self,
        asset_id: str,
        band: str,
        bounds: Tuple[float, float, float, float],
        scale: Optional[float] = None,
        crs: str = 'EPSG:4326',
        start: Optional[str] = None,
        end: Optional[str] = None,
        name: Optional[str] = None,
    ):
        self.asset_id = asset_id
        self.band = band
        self.bounds = bounds
        self.scale = scale
        self.crs = crs
        self.name = name or band
        self.region = ee.Geometry.Rectangle(list(bounds))

        collection = ee.ImageCollection(asset_id).select(band).filterBounds(self.region)
        if start is not None and end is not None:
            collection = collection.filterDate(start, end)
        self.collection = collection
        self._scale_meters = None

    def date_range(self) -> Tuple[pd.Timestamp, pd.Timestamp]:
        time_range = self.collection.reduceColumns(
            ee.Reducer.minMax(), ['system:time_start']
        ).getInfo()
        if time_range.get('min') is None:
            raise ValueError(f"Collection {self.asset_id} is empty over the study area")
        return (
            pd.Timestamp(time_range['min'], unit='ms'),
            pd.Timestamp(time_range['max'], unit='ms'),
        )

    def _get_native_scale(self) -> float:
        """
        Get the native scale (resolution) of the image collection in meters.
        """
        try:
            native_scale = self.collection.first().projection().nominalScale().getInfo()
            logger.info(f"Native scale of {self.asset_id}: {native_scale} meters")
            return native_scale
        except Exception as e:
            logger.warning(f"Could not determine native scale, defaulting to 10000m: {e}")
            return 10000.0

    @property
    def scale_meters(self) -> float:
        if self._scale_meters is None:
            self._scale_meters = self.scale if self.scale is not None else self._get_native_scale()
        return self._scale_meters

    def _estimate_pixel_count(self, scale_meters: float) -> int:
        """
        Estimate the number of pixels of the bounding box at a given scale.
        """
        min_lon, min_lat, max_lon, max_lat = self.bounds

        # width and height in meters at mid-latitude
        mid_lat = (min_lat + max_lat) / 2
        lat_meters_per_degree = METERS_PER_DEGREE
        lon_meters_per_degree = METERS_PER_DEGREE * np.cos(np.radians(mid_lat))

        n_cols = int(np.ceil((max_lon - min_lon) * lon_meters_per_degree / scale_meters))
        n_rows = int(np.ceil((max_lat - min_lat) * lat_meters_per_degree / scale_meters))
        return n_cols * n_rows

    def _create_tile_grid(self, scale_meters: float) -> List[Tuple[float, float, float, float]]:
        """
        Split the bounding box into tiles of at most MAX_PIXELS_PER_TILE pixels.

        Returns
        -------
        list
            Tile bounds as (min_lon, min_lat, max_lon, max_lat).
        """
        min_lon, min_lat, max_lon, max_lat = self.bounds
        tile_pixels = int(np.sqrt(MAX_PIXELS_PER_TILE))

        mid_lat = (min_lat + max_lat) / 2
        tile_height_deg = (tile_pixels * scale_meters) / METERS_PER_DEGREE
        tile_width_deg = (tile_pixels * scale_meters) / (METERS_PER_DEGREE * np.cos(np.radians(mid_lat)))

        tiles = []
        lat = min_lat
        while lat < max_lat:
            lon = min_lon
            while lon < max_lon:
                tiles.append((
                    lon, lat,
                    min(lon + tile_width_deg, max_lon),
                    min(lat + tile_height_deg, max_lat),
                ))
                lon += tile_width_deg
            lat += tile_height_deg

        logger.debug(f"Created {len(tiles)} tiles for download")
        return tiles

    def _sample(self, img: ee.Image, tile_bounds: Tuple[float, float, float, float]) -> Optional[xr.DataArray]:
        """Sample one rectangle of an image into a DataArray."""
        region = ee.Geometry.Rectangle(list(tile_bounds))
        arr = img.sampleRectangle(
            region=region,
            defaultValue=GEE_NODATA
        ).get(self.band).getInfo()

        if arr is None:
            return None

        arr = np.array(arr, dtype=np.float32)
        arr[arr == GEE_NODATA] = np.nan

        min_lon, min_lat, max_lon, max_lat = tile_bounds
        da = xr.DataArray(
            arr,
            dims=['y', 'x'],
            coords={
                'y': np.linspace(max_lat, min_lat, arr.shape[0]),
                'x': np.linspace(min_lon, max_lon, arr.shape[1]),
            },
        )
        return da.rio.write_crs(self.crs)

    def _mosaic_tiles(self, tile_files: List[Path]) -> xr.DataArray:
        """Mosaic tile GeoTIFFs into one DataArray."""
        tile_arrays = [
            rioxarray.open_rasterio(f, masked=True).squeeze('band', drop=True)
            for f in tile_files
        ]
        try:
            merged = merge_arrays(tile_arrays, nodata=np.nan)
            return merged.load()
        finally:
            for da in tile_arrays:
                da.close()

    def _download_image(self, img: ee.Image) -> Optional[xr.DataArray]:
        """
        Download a single image, using chunked download if needed.
        """
        scale_meters = self.scale_meters
        img = img.reproject(crs=self.crs, scale=scale_meters)

        estimated_pixels = self._estimate_pixel_count(scale_meters)
        logger.debug(f"Estimated pixels: {estimated_pixels}, max allowed: {MAX_PIXELS_PER_TILE}")

        if estimated_pixels <= MAX_PIXELS_PER_TILE:
            return self._sample(img, self.bounds)

        temp_dir = Path(tempfile.mkdtemp(prefix='sudanet_'))
        try:
            tile_files = []
            for i, tile_bounds in enumerate(self._create_tile_grid(scale_meters)):
                try:
                    tile_da = self._sample(img, tile_bounds)
                except Exception as e:
                    logger.warning(f"Failed to download tile {i}: {e}")
                    continue
                if tile_da is None:
                    continue
                tile_path = temp_dir / f"tile_{i:04d}.tif"
                tile_da.rio.to_raster(tile_path)
                tile_files.append(tile_path)

            if not tile_files:
                return None
            if len(tile_files) == 1:
                return rioxarray.open_rasterio(tile_files[0], masked=True).squeeze('band', drop=True).load()
            return self._mosaic_tiles(tile_files)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def fetch(self, start, end) -> Optional[xr.DataArray]:
        start = pd.Timestamp(start)
        end = pd.Timestamp(end)
        window = self.collection.filterDate(start.strftime('%Y-%m-%d'), end.strftime('%Y-%m-%d'))

        n_images = window.size().getInfo()
        if n_images == 0:
            return None

        timestamps = window.aggregate_array('system:time_start').getInfo()
        images = window.toList(n_images)

        frames = []
        times = []
        for i, ts in enumerate(timestamps):
            da = self._download_image(ee.Image(images.get(i)))
            if da is None:
                logger.warning(f"No {self.name} data for image at {pd.Timestamp(ts, unit='ms').date()}")
                continue
            frames.append(da)
            times.append(pd.Timestamp(ts, unit='ms'))

        if not frames:
            return None

        logger.debug(f"Downloaded {len(frames)} {self.name} frames for {start:%Y-%m}")
        stack = xr.concat(frames, dim=pd.Index(times, name='time'), join='override')
        return stack.rio.write_crs(self.crs)
