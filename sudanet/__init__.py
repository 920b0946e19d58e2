"""
sudanet - Monthly evapotranspiration drought analysis (SETI, Mann-Kendall trend,
zonal statistics) for Sudan from GEE or local raster data.
"""

from .config import AnalysisConfig, DroughtThresholds, load_config
from .core import ETDroughtAnalysis, AnalysisResult, aggregate_monthly
from .sources import RasterSource, LocalRasterSource, GEERasterSource
from .utils import Regions, load_geometry, load_regions, month_windows, is_gee_asset
from .methods import (
    standardized_anomaly,
    classify_drought,
    mann_kendall_s,
    mann_kendall_z,
    calculate_seti,
    calculate_mann_kendall,
    mosaic_last_valid,
    list_available_methods,
)
from .analysis import (
    StatisticalAnalyzer,
    Visualizer,
    ExportFailure,
    ExportReport,
    export_to_netcdf,
)

__version__ = "1.0.0"
__all__ = [
    # Config
    "AnalysisConfig",
    "DroughtThresholds",
    "load_config",
    # Core
    "ETDroughtAnalysis",
    "AnalysisResult",
    "aggregate_monthly",
    # Sources
    "RasterSource",
    "LocalRasterSource",
    "GEERasterSource",
    # Utils
    "Regions",
    "load_geometry",
    "load_regions",
    "month_windows",
    "is_gee_asset",
    # Methods
    "standardized_anomaly",
    "classify_drought",
    "mann_kendall_s",
    "mann_kendall_z",
    "calculate_seti",
    "calculate_mann_kendall",
    "mosaic_last_valid",
    "list_available_methods",
    # Analysis
    "StatisticalAnalyzer",
    "Visualizer",
    "ExportFailure",
    "ExportReport",
    "export_to_netcdf",
]
