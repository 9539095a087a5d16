"""Command line interface for exporting and importing saga data."""

import argparse
import logging
import sys
from typing import List, Optional

from .errors import ConfigurationError, MigrationError
from .exporter import Exporter
from .factories import create_document_store, create_table_source
from .loaders.importer import DocumentImporter
from .models.migration import ExportConfig, MigrationConfig, MigrationStatus, RunSummary
from .services.identity import derive

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="saga-migration",
        description="Saga Migration Tool - Move saga state from Azure Table Storage to Cosmos DB"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Export
    export_parser = subparsers.add_parser("export", help="Export one saga table to JSON files")
    export_parser.add_argument("--config", required=True, help="Path to migration config file")
    export_parser.add_argument("--type-name", help="Table / saga type to export")
    export_parser.add_argument("--type-full-name", help="Fully qualified saga data type name")
    export_parser.add_argument("--key-property", help="Correlation property of the saga")
    export_parser.add_argument("--output-dir", help="Export root directory")
    export_parser.add_argument("--workers", type=int, help="Parallel writer threads")
    export_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # Import
    import_parser = subparsers.add_parser("import", help="Import an export tree into Cosmos DB")
    import_parser.add_argument("--config", required=True, help="Path to migration config file")
    import_parser.add_argument("--input-dir", help="Export root directory")
    import_parser.add_argument("--type", dest="type_names", action="append", help="Type to import (repeatable)")
    import_parser.add_argument("--dry-run", action="store_true", help="Validate files without writing")
    import_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # Derive id
    derive_parser = subparsers.add_parser("derive-id", help="Compute the document id of a saga")
    derive_parser.add_argument("--type-full-name", required=True, help="Fully qualified saga data type name")
    derive_parser.add_argument("--key-property", required=True, help="Correlation property name")
    derive_parser.add_argument("--value", required=True, help="Correlation property value")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    try:
        if args.command == "export":
            return run_export(args)
        elif args.command == "import":
            return run_import(args)
        elif args.command == "derive-id":
            print(derive(args.type_full_name, args.key_property, args.value))
            return 0
        else:
            parser.print_help()
            return 2
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except MigrationError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


def _export_config(args, config: MigrationConfig) -> ExportConfig:
    data = config.export.to_dict() if config.export else {}
    overrides = {
        "type_name": args.type_name,
        "type_full_name": args.type_full_name,
        "key_property": args.key_property,
        "output_dir": args.output_dir,
        "parallel_workers": args.workers,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    return ExportConfig.from_dict(data)


def run_export(args) -> int:
    """Run an export from config file."""
    config = MigrationConfig.from_json_file(args.config)
    export_config = _export_config(args, config)

    source = create_table_source(config.source)
    try:
        exporter = Exporter(
            source,
            export_config,
            page_size=config.source.page_size,
            partition_key_property=config.target.partition_key_property,
        )
        summary = exporter.run()
    finally:
        source.close()

    _print_summary("EXPORT COMPLETE", summary)
    return 0 if summary.status == MigrationStatus.COMPLETED else 1


def run_import(args) -> int:
    """Run an import from config file."""
    config = MigrationConfig.from_json_file(args.config)
    import_config = config.import_
    input_dir = args.input_dir or import_config.input_dir
    type_names = args.type_names or import_config.type_names

    store = create_document_store(config.target)
    try:
        if not store.validate_connection():
            raise ConfigurationError("Failed to connect to Cosmos DB")
        importer = DocumentImporter(
            store,
            config.target,
            dry_run=args.dry_run or import_config.dry_run,
            report_dir=import_config.report_dir,
        )
        summaries = importer.import_tree(input_dir, type_names)
    finally:
        store.close()

    for summary in summaries:
        _print_summary(f"IMPORT {summary.type_name} COMPLETE", summary)
    return 0 if all(s.status == MigrationStatus.COMPLETED for s in summaries) else 1


def _print_summary(title: str, summary: RunSummary) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)
    print(f"Status: {summary.status.value}")
    print(f"Records Processed: {summary.total}")
    print(f"Succeeded: {summary.succeeded}")
    print(f"Failed: {summary.failed}")
    if summary.skipped:
        print(f"Skipped: {summary.skipped}")
    if summary.duration_seconds:
        print(f"Duration: {summary.duration_seconds:.2f} seconds")
    for failure in summary.failures:
        print(f"  - {failure.record_id}: {failure.reason}")


if __name__ == "__main__":
    sys.exit(main())
