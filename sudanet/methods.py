"""
Statistical methods for the ET drought analysis.

This module provides the pixel-wise kernels of the analysis: the Standardized
ET Index (SETI), its drought classification, the Mann-Kendall trend
statistic and the last-valid-pixel mosaic used when exporting SETI.
"""

import logging
import warnings

import numpy as np
import xarray as xr

from .config import DroughtThresholds

logger = logging.getLogger(__name__)

# Drought classes assigned by classify_drought
EXTREME_DROUGHT = 1
SEVERE_DROUGHT = 2
MODERATE_DROUGHT = 3
NO_DROUGHT = 4
DROUGHT_CLASS_NODATA = 0

DROUGHT_CLASS_LABELS = {
    EXTREME_DROUGHT: 'Extreme',
    SEVERE_DROUGHT: 'Severe',
    MODERATE_DROUGHT: 'Moderate',
    NO_DROUGHT: 'None',
}

# Standard deviations below this fraction of max(|mean|, 1) are treated as zero
STD_EPSILON = 1e-9


def standardized_anomaly(values: np.ndarray, axis: int = 0):
    """
    Standardize a stack of frames against its own mean and standard deviation.

    The mean and population standard deviation are computed per pixel over
    the whole stack, ignoring NaN.

    Formula:
        anomaly = (x - mean) / std

    Parameters
    ----------
    values : np.ndarray
        Stack of frames with time along ``axis``.
    axis : int, optional
        Time axis. Default is 0.

    Returns
    -------
    tuple of np.ndarray
        ``(anomaly, mean, std)``. ``anomaly`` has the shape of ``values`` and
        is NaN wherever the pixel's standard deviation is zero or undefined.
    """
    values = np.asarray(values, dtype=np.float64)
    with warnings.catch_warnings():
        # all-NaN pixels (outside the boundary) are expected
        warnings.simplefilter('ignore', category=RuntimeWarning)
        mean = np.nanmean(values, axis=axis)
        std = np.nanstd(values, axis=axis, ddof=0)

    degenerate = ~(std > STD_EPSILON * np.maximum(np.abs(mean), 1.0))
    safe_std = np.where(degenerate, np.nan, std)

    anomaly = (values - np.expand_dims(mean, axis)) / np.expand_dims(safe_std, axis)
    return anomaly, mean, std


def classify_drought(
    seti: np.ndarray,
    thresholds: DroughtThresholds = DroughtThresholds()
) -> np.ndarray:
    """
    Classify SETI values into drought severity classes.

    Formula:
        - SETI <= extreme: 1 (extreme)
        - SETI <= severe: 2 (severe)
        - SETI <= moderate: 3 (moderate)
        - otherwise: 4 (no drought)

    NaN values are assigned ``DROUGHT_CLASS_NODATA`` (0).

    Parameters
    ----------
    seti : np.ndarray
        Standardized ET anomalies.
    thresholds : DroughtThresholds, optional
        Class boundaries. Default is -2.0 / -1.5 / -1.0.

    Returns
    -------
    np.ndarray
        Drought class as int8.
    """
    seti = np.asarray(seti, dtype=np.float64)
    with np.errstate(invalid='ignore'):
        classes = np.select(
            [
                seti <= thresholds.extreme,
                seti <= thresholds.severe,
                seti <= thresholds.moderate,
                ~np.isnan(seti),
            ],
            [EXTREME_DROUGHT, SEVERE_DROUGHT, MODERATE_DROUGHT, NO_DROUGHT],
            default=DROUGHT_CLASS_NODATA,
        )
    return classes.astype(np.int8)


def _pairwise_counts(values: np.ndarray, axis: int):
    """Count increasing pairs and comparable pairs for every pixel."""
    values = np.moveaxis(np.asarray(values, dtype=np.float64), axis, 0)
    n = values.shape[0]
    valid = ~np.isnan(values)

    increases = np.zeros(values.shape[1:], dtype=np.int64)
    comparable = np.zeros(values.shape[1:], dtype=np.int64)
    with np.errstate(invalid='ignore'):
        for lag in range(1, n):
            increases += np.sum(values[lag:] > values[:-lag], axis=0)
            comparable += np.sum(valid[lag:] & valid[:-lag], axis=0)
    return n, increases, comparable


def mann_kendall_s(values: np.ndarray, axis: int = 0) -> np.ndarray:
    """
    Calculate the Mann-Kendall S statistic of each pixel.

    Only increasing pairs are counted:

    Formula:
        S = sum_{i<j} [x_j > x_i] - n(n-1)/4

    Without ties this equals half of the classical Kendall S
    (concordant minus discordant pairs).

    Parameters
    ----------
    values : np.ndarray
        Stack of frames sorted by time along ``axis``.
    axis : int, optional
        Time axis. Default is 0.

    Returns
    -------
    np.ndarray
        S per pixel. NaN where no pair of valid values exists.
    """
    n, increases, comparable = _pairwise_counts(values, axis)
    s = increases - n * (n - 1) / 4.0
    return np.where(comparable > 0, s, np.nan)


def mann_kendall_z(values: np.ndarray, axis: int = 0) -> np.ndarray:
    """
    Calculate the Mann-Kendall Z statistic of each pixel.

    Formula:
        var = n(n-1)(2n+5) / 72
        Z = S / sqrt(var)

    where n is the number of frames and S is :func:`mann_kendall_s`.
    Z > 0 indicates an increasing trend, Z < 0 a decreasing one.

    Parameters
    ----------
    values : np.ndarray
        Stack of frames sorted by time along ``axis``.
    axis : int, optional
        Time axis. Default is 0.

    Returns
    -------
    np.ndarray
        Z per pixel as float32. All NaN when fewer than two frames are given.
    """
    values = np.asarray(values, dtype=np.float64)
    n = values.shape[axis]
    if n < 2:
        out_shape = np.delete(np.array(values.shape), axis)
        return np.full(tuple(out_shape), np.nan, dtype=np.float32)

    s = mann_kendall_s(values, axis=axis)
    variance = n * (n - 1) * (2 * n + 5) / 72.0
    return (s / np.sqrt(variance)).astype(np.float32)


def calculate_seti(
    series: xr.DataArray,
    thresholds: DroughtThresholds = DroughtThresholds()
) -> xr.Dataset:
    """
    Calculate SETI and the drought class for every frame of a monthly series.

    Parameters
    ----------
    series : xr.DataArray
        Monthly ET with dims ``('time', 'y', 'x')``.
    thresholds : DroughtThresholds, optional
        Drought class boundaries.

    Returns
    -------
    xr.Dataset
        Variables ``SETI`` (float32) and ``drought_class`` (int8, 0 = no data)
        with the coordinates of ``series``.
    """
    values = series.transpose('time', ...).values
    anomaly, mean, std = standardized_anomaly(values, axis=0)

    degenerate = np.isnan(anomaly).all(axis=0) & ~np.isnan(mean)
    if degenerate.any():
        logger.warning(
            f"SETI undefined for {int(degenerate.sum())} pixels with zero "
            f"standard deviation; set to no-data"
        )

    anomaly = anomaly.astype(np.float32)
    dims = series.transpose('time', ...).dims
    seti = xr.DataArray(
        anomaly,
        dims=dims,
        coords=series.coords,
        attrs={'long_name': 'standardized_et_index', 'units': '1'}
    )
    drought_class = xr.DataArray(
        classify_drought(anomaly, thresholds),
        dims=dims,
        coords=series.coords,
        attrs={
            'long_name': 'drought_class',
            'flag_values': '1 2 3 4',
            'flag_meanings': 'extreme severe moderate none',
            'nodata': DROUGHT_CLASS_NODATA,
        }
    )
    return xr.Dataset({'SETI': seti, 'drought_class': drought_class})


def calculate_mann_kendall(series: xr.DataArray) -> xr.DataArray:
    """
    Calculate the pixel-wise Mann-Kendall Z surface of a monthly series.

    The series is sorted by time first. Chunked (dask) input is processed
    chunk by chunk with the time axis kept whole.

    Parameters
    ----------
    series : xr.DataArray
        Monthly ET with a ``time`` dimension.

    Returns
    -------
    xr.DataArray
        Z statistic per pixel, named ``mk_z``.
    """
    series = series.sortby('time')
    if series.chunks is not None:
        series = series.chunk({'time': -1})

    z = xr.apply_ufunc(
        mann_kendall_z,
        series,
        input_core_dims=[['time']],
        kwargs={'axis': -1},
        dask='parallelized',
        output_dtypes=[np.float32],
    )
    z = z.drop_vars([c for c in ('year', 'month') if c in z.coords])
    z.name = 'mk_z'
    z.attrs = {'long_name': 'mann_kendall_z', 'n_frames': int(series.sizes['time'])}
    return z


def mosaic_last_valid(seti: xr.Dataset, valid_var: str = 'SETI') -> xr.Dataset:
    """
    Mosaic a SETI series into one frame, the latest valid frame winning.

    For each pixel the values of every variable are taken from the last
    frame in which ``valid_var`` is not NaN. Pixels never valid are NaN
    (``drought_class`` 0).

    Parameters
    ----------
    seti : xr.Dataset
        Output of :func:`calculate_seti`.
    valid_var : str, optional
        Variable whose validity selects the frame. Default is 'SETI'.

    Returns
    -------
    xr.Dataset
        Dataset without the ``time`` dimension.
    """
    seti = seti.sortby('time')
    valid = seti[valid_var].notnull().transpose('time', ...).values
    n = valid.shape[0]

    last_index = n - 1 - np.argmax(valid[::-1], axis=0)
    has_valid = valid.any(axis=0)

    spatial_dims = seti[valid_var].transpose('time', ...).dims[1:]
    indexer = xr.DataArray(last_index, dims=spatial_dims)
    mosaic = seti.isel(time=indexer)
    mosaic = mosaic.drop_vars([c for c in ('time', 'year', 'month') if c in mosaic.coords])

    has_valid = xr.DataArray(has_valid, dims=spatial_dims)
    for name in mosaic.data_vars:
        if name == 'drought_class':
            mosaic[name] = mosaic[name].where(has_valid, DROUGHT_CLASS_NODATA).astype(np.int8)
        else:
            mosaic[name] = mosaic[name].where(has_valid)
    return mosaic


def list_available_methods() -> dict:
    """
    List the statistical methods with their descriptions.

    Returns
    -------
    dict
        Method name -> short description.
    """
    return {
        'seti': 'Standardized ET Index: (ET - mean) / std over the full series',
        'drought_class': 'SETI classes 1=extreme, 2=severe, 3=moderate, 4=none',
        'mann_kendall': 'Mann-Kendall Z of increasing pairs, var = n(n-1)(2n+5)/72',
        'mosaic': 'Per-pixel value of the latest frame with valid SETI',
    }
