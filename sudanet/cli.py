"""
Command-line interface for sudanet.
"""

import argparse
import logging
import sys
from pathlib import Path

from .config import load_config
from .core import ETDroughtAnalysis

# Exit status when the analysis ran but some products failed to export
EXIT_EXPORT_FAILURE = 2


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Monthly evapotranspiration drought analysis (SETI, Mann-Kendall, zonal statistics).',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Download MODIS ET and CHIRPS from GEE and analyse Sudan
  sudanet --source gee --project my-project \\
          --start-year 2000 --end-year 2023 \\
          --output ./Sudan_ET_Analysis

  # Analyse local rasters with custom drought thresholds
  sudanet --source local \\
          --et-path et_8day.nc \\
          --precip-path chirps_daily.nc \\
          --boundary sudan_adm0.geojson \\
          --admin1 sudan_adm1.geojson \\
          --severe -1.6 \\
          --output ./output
        """
    )

    parser.add_argument(
        '--config', '-c',
        type=Path,
        default=None,
        help='YAML configuration file (command-line options override it)'
    )

    parser.add_argument(
        '--source',
        choices=['gee', 'local'],
        default='gee',
        help='Where raw rasters come from (default: gee)'
    )

    parser.add_argument(
        '--et-path',
        type=Path,
        default=None,
        help='Raw ET NetCDF file or directory of dated GeoTIFFs (--source local)'
    )

    parser.add_argument(
        '--precip-path',
        type=Path,
        default=None,
        help='Raw precipitation NetCDF file or directory of dated GeoTIFFs (--source local)'
    )

    parser.add_argument(
        '--boundary', '-g',
        type=str,
        default=None,
        help='National boundary file or GEE FeatureCollection asset ID'
    )

    parser.add_argument(
        '--admin1', '-G',
        type=str,
        default=None,
        help='Admin-1 boundary file or GEE FeatureCollection asset ID'
    )

    parser.add_argument(
        '--start-year', '-s',
        type=int,
        default=None,
        help='First year of the annual statistics (inclusive)'
    )

    parser.add_argument(
        '--end-year', '-e',
        type=int,
        default=None,
        help='Last year of the annual statistics (inclusive)'
    )

    parser.add_argument(
        '--scale', '-r',
        type=float,
        default=None,
        help='Working resolution in meters (default: 500); local rasters are only resampled with --resample'
    )

    parser.add_argument('--extreme', type=float, default=None, help='SETI threshold of extreme drought (default: -2.0)')
    parser.add_argument('--severe', type=float, default=None, help='SETI threshold of severe drought (default: -1.5)')
    parser.add_argument('--moderate', type=float, default=None, help='SETI threshold of moderate drought (default: -1.0)')

    parser.add_argument(
        '--output', '-o',
        required=True,
        type=Path,
        help='Output directory for tables, rasters and figures'
    )

    parser.add_argument(
        '--workers', '-w',
        type=int,
        default=4,
        help='Number of parallel workers (default: 4)'
    )

    parser.add_argument(
        '--project', '-p',
        type=str,
        default=None,
        help='GEE project ID for authentication'
    )

    parser.add_argument(
        '--restrict-to-years',
        action='store_true',
        help='Only use raw data within --start-year/--end-year instead of the whole collection'
    )

    parser.add_argument(
        '--resample',
        action='store_true',
        help='Resample local ET rasters to --scale (--source local)'
    )

    parser.add_argument('--no-precip', action='store_true', help='Skip precipitation and the ET correlation')
    parser.add_argument('--no-plots', action='store_true', help='Skip PNG figures')
    parser.add_argument('--netcdf', action='store_true', help='Also write the monthly series as NetCDF')

    parser.add_argument(
        '--sequential',
        action='store_true',
        help='Process sequentially instead of in parallel (useful for debugging)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose output'
    )
    return parser


def main(argv=None):
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Setup logging
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = load_config(args.config).replace(
            start_year=args.start_year,
            end_year=args.end_year,
            scale=args.scale,
            extreme=args.extreme,
            severe=args.severe,
            moderate=args.moderate,
        )
    except (OSError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    if args.source == 'local':
        missing = [
            flag for flag, value in (
                ('--et-path', args.et_path),
                ('--boundary', args.boundary),
                ('--admin1', args.admin1),
            ) if value is None
        ]
        if missing:
            logger.error(f"--source local requires {', '.join(missing)}")
            sys.exit(1)

    if args.workers < 1:
        logger.error("--workers must be at least 1")
        sys.exit(1)

    try:
        logger.info("Initializing ET drought analysis...")
        logger.info(f"Country: {config.country}")
        logger.info(f"Annual statistics: {config.start_year} - {config.end_year}")
        logger.info(f"Scale: {config.scale} m")
        logger.info(
            f"Drought thresholds: extreme={config.thresholds.extreme}, "
            f"severe={config.thresholds.severe}, moderate={config.thresholds.moderate}"
        )

        if args.source == 'gee':
            analysis = ETDroughtAnalysis.from_gee(
                config,
                gee_project=args.project,
                boundary_path=args.boundary,
                admin1_path=args.admin1,
                include_precip=not args.no_precip,
                restrict_to_years=args.restrict_to_years,
            )
        else:
            analysis = ETDroughtAnalysis.from_local(
                config,
                et_path=args.et_path,
                boundary_path=args.boundary,
                admin1_path=args.admin1,
                precip_path=None if args.no_precip else args.precip_path,
                resample=args.resample,
                restrict_to_years=args.restrict_to_years,
            )

        # Process
        if args.sequential:
            logger.info("Processing sequentially...")
            report = analysis.process_sequential(args.output, netcdf=args.netcdf, plots=not args.no_plots)
        else:
            logger.info(f"Processing with {args.workers} workers...")
            report = analysis.process(
                args.output, n_workers=args.workers, netcdf=args.netcdf, plots=not args.no_plots
            )

    except Exception as e:
        logger.error(f"Error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)

    # Summary
    logger.info(f"Processing complete. {report.summary()}.")
    if not report.ok:
        for name, message in report.failed.items():
            logger.error(f"Failed product {name}: {message}")
        sys.exit(EXIT_EXPORT_FAILURE)


if __name__ == '__main__':
    main()
