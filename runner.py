"""Command-line entry point for mass-import reconciliation and cache warming."""

import argparse
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pipelines.batch_state import BatchStateLog
from pipelines.config import SCORING_PRESETS, ImportConfig, load_config
from pipelines.errors import ConfigurationError, PersistenceError
from pipelines.reconcile import ImportOrchestrator
from pipelines.report import ImportReport
from pipelines.similarity import SimilarityScorer
from pipelines.sources import extract_coordinates, load_candidates
from tools.catalog import HttpCatalogClient
from tools.geo_locator import GeocodeCache, GeocodeStore, NominatimClient, RateLimiter, warm_cache

EXIT_OK = 0
EXIT_ABORTED = 2
EXIT_USAGE = 64


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s - %(levelname)s - %(message)s")


def build_overrides(args: argparse.Namespace) -> Dict[str, Dict[str, Any]]:
    """Translate CLI flags into config overrides; unset flags leave the config alone."""
    overrides: Dict[str, Dict[str, Any]] = {"geocoder": {}, "catalog": {}, "import": {}}
    if getattr(args, "user_agent", None):
        overrides["geocoder"]["user_agent"] = args.user_agent
    if getattr(args, "cache", None):
        overrides["geocoder"]["cache_path"] = str(args.cache)
    if getattr(args, "catalog_url", None):
        overrides["catalog"]["base_url"] = args.catalog_url
    if getattr(args, "catalog_token", None):
        overrides["catalog"]["api_token"] = args.catalog_token
    if getattr(args, "state_dir", None):
        overrides["import"]["state_dir"] = str(args.state_dir)
    if getattr(args, "report_dir", None):
        overrides["import"]["report_dir"] = str(args.report_dir)
    if getattr(args, "dry_run", False):
        overrides["import"]["dry_run"] = True
    return {section: values for section, values in overrides.items() if values}


def build_geocoder(config: ImportConfig) -> GeocodeCache:
    geo_cfg = config.geocoder
    store = GeocodeStore(Path(geo_cfg.cache_path))
    client = NominatimClient(
        user_agent=geo_cfg.user_agent,
        base_url=geo_cfg.base_url,
        email=geo_cfg.email,
        timeout=geo_cfg.timeout_sec,
    )
    return GeocodeCache(store, client, RateLimiter(geo_cfg.min_interval_sec))


def publish_report(report: ImportReport, report_dir: Path) -> bool:
    """Print the digest and write the report files; False if the files could not be written."""
    print(report.digest())
    try:
        paths = report.write(report_dir)
    except OSError as exc:
        logging.error("Report for batch %s could not be written to %s: %s", report.batch_id, report_dir, exc)
        return False
    print(f"Report: {paths['json']}")
    return True


def default_batch_id(input_path: Path) -> str:
    return f"{input_path.stem}-{datetime.now().strftime('%Y-%m-%d')}"


def run_import(args: argparse.Namespace) -> int:
    config = load_config(args.config, build_overrides(args), preset=args.preset)
    input_path = Path(args.input)
    source = args.source or input_path.stem
    batch_id = args.batch_id or default_batch_id(input_path)
    if config.dry_run:
        batch_id = f"{batch_id}-dry-run"

    candidates = load_candidates(input_path, default_source=source)
    geocoder = build_geocoder(config)
    catalog = HttpCatalogClient(
        base_url=config.catalog.base_url,
        api_token=config.catalog.api_token,
        timeout=config.catalog.timeout_sec,
    )
    report_dir = Path(config.report_dir)
    try:
        state_log = BatchStateLog.for_batch(Path(config.state_dir), batch_id).open()
    except PersistenceError as exc:
        logging.error("Batch %s cannot start: %s", batch_id, exc)
        report = ImportReport.from_entries(batch_id, datetime.now(timezone.utc).isoformat(), [])
        report.finished_at = report.started_at
        report.dry_run = config.dry_run
        report.aborted = True
        report.abort_reason = str(exc)
        publish_report(report, report_dir)
        return EXIT_ABORTED
    orchestrator = ImportOrchestrator(
        geocoder=geocoder,
        catalog=catalog,
        scorer=SimilarityScorer(config.scoring),
        state_log=state_log,
        config=config,
    )

    report = orchestrator.run(candidates, limit=args.limit)
    written = publish_report(report, report_dir)
    return EXIT_ABORTED if report.aborted or not written else EXIT_OK


def run_warm_cache(args: argparse.Namespace) -> int:
    config = load_config(args.config, build_overrides(args))
    coordinates = extract_coordinates(Path(args.input))
    geocoder = build_geocoder(config)
    stats = warm_cache(geocoder, coordinates, max_new=args.max_new)
    print(stats.summary())
    store_stats = geocoder.store.stats()
    print(f"Cache entries: {store_stats['total_entries']}  | Path: {store_stats['path']}")
    return EXIT_OK


def run_cache_stats(args: argparse.Namespace) -> int:
    config = load_config(args.config, build_overrides(args))
    stats = GeocodeStore(Path(config.geocoder.cache_path)).stats()
    print(f"Path: {stats['path']}")
    print(f"Entries: {stats['total_entries']}")
    print(f"Oldest: {stats['oldest_entry'] or '-'}")
    print(f"Newest: {stats['newest_entry'] or '-'}")
    return EXIT_OK


def load_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile bulk point-of-interest imports against the catalog.")
    parser.add_argument("--config", type=Path, help="JSON config file merged over the defaults.")
    parser.add_argument("--cache", type=Path, help="Override geocode cache path (JSON lines).")
    parser.add_argument("--user-agent", help="User-Agent sent to the geocoding service.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Run an import batch.")
    import_parser.add_argument("input", help="Input file (.jsonl, .json, .geojson, .csv, .parquet).")
    import_parser.add_argument("--source", help="Provenance tag for records without one (default: file stem).")
    import_parser.add_argument("--batch-id", help="Batch identifier; reuse it to resume an interrupted run.")
    import_parser.add_argument("--catalog-url", help="Override catalog API base URL.")
    import_parser.add_argument("--catalog-token", help="Bearer token for the catalog API.")
    import_parser.add_argument("--state-dir", type=Path, help="Override batch state directory.")
    import_parser.add_argument("--report-dir", type=Path, help="Override report output directory.")
    import_parser.add_argument(
        "--preset",
        default="default",
        choices=sorted(SCORING_PRESETS),
        help="Scoring threshold preset.",
    )
    import_parser.add_argument("--dry-run", action="store_true", help="Score and classify without catalog writes.")
    import_parser.add_argument("--limit", type=int, help="Process at most N new records in this run.")
    import_parser.set_defaults(handler=run_import)

    warm_parser = subparsers.add_parser("warm-cache", help="Pre-fill the geocode cache from an input file.")
    warm_parser.add_argument("input", help="Input file with coordinates.")
    warm_parser.add_argument("--max-new", type=int, default=None, help="Maximum number of new geocode calls.")
    warm_parser.set_defaults(handler=run_warm_cache)

    stats_parser = subparsers.add_parser("cache-stats", help="Show geocode cache statistics.")
    stats_parser.set_defaults(handler=run_cache_stats)

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = load_arguments(argv)
    setup_logging(args.verbose)
    try:
        return args.handler(args)
    except ConfigurationError as exc:
        logging.error("Configuration error: %s", exc)
        return EXIT_USAGE
    except PersistenceError as exc:
        logging.error("Local store unavailable: %s", exc)
        return EXIT_ABORTED


if __name__ == "__main__":
    sys.exit(main())
