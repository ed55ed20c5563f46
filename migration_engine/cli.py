"""Command line interface for the ETL migration engine."""

import argparse
import json
import logging
import sys
from typing import Optional

from .adapters.factory import create_adapter
from .controller import execute_etl_pipeline
from .errors import MigrationEngineError
from .models.execution import ETLPipelineConfig, ExecutionStatus
from .models.schema import ConnectionRole, TableMapping
from .services.auto_mapper import AutoMappingSuggester, unmatched_columns
from .services.preview import generate_preview
from .services.repository import JsonFileReportSink, JsonMappingRepository, MappingProject

logger = logging.getLogger(__name__)


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="ETL Migration Engine - Move data between relational and document databases"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run pipeline
    run_parser = subparsers.add_parser("run", help="Run the migration pipeline for a project")
    run_parser.add_argument("--projects-dir", required=True, help="Directory containing project JSON files")
    run_parser.add_argument("--project", required=True, help="Project id")
    run_parser.add_argument("--config", help="Path to pipeline config JSON file")
    run_parser.add_argument("--batch-size", type=int, help="Rows per batch")
    run_parser.add_argument("--parallelism", type=int, help="Tables processed concurrently per stage")
    run_parser.add_argument(
        "--error-handling",
        choices=["fail-fast", "continue-on-error", "skip-and-log"],
        help="Failure policy",
    )
    run_parser.add_argument(
        "--load-strategy",
        choices=["truncate-load", "merge", "append"],
        help="How target tables are written",
    )
    run_parser.add_argument("--no-validate", action="store_true", help="Skip the validation stage")
    run_parser.add_argument("--reports-dir", default="./logs", help="Where reports are written")

    # Discover schema
    discover_parser = subparsers.add_parser("discover", help="Discover a connection's schema")
    discover_parser.add_argument("--projects-dir", required=True, help="Directory containing project JSON files")
    discover_parser.add_argument("--project", required=True, help="Project id")
    discover_parser.add_argument("--role", choices=["source", "target"], default="source", help="Which connection")
    discover_parser.add_argument("--output", help="Output file path")

    # Suggest mappings
    suggest_parser = subparsers.add_parser("suggest", help="Suggest table and column mappings")
    suggest_parser.add_argument("--projects-dir", required=True, help="Directory containing project JSON files")
    suggest_parser.add_argument("--project", required=True, help="Project id")
    suggest_parser.add_argument("--min-confidence", type=float, default=0.7, help="Minimum confidence")
    suggest_parser.add_argument("--apply", type=float, help="Write mappings at or above this confidence")
    suggest_parser.add_argument("--output", help="Project file to write when applying")

    # Preview transformation
    preview_parser = subparsers.add_parser("preview", help="Preview a table's transformed rows")
    preview_parser.add_argument("--projects-dir", required=True, help="Directory containing project JSON files")
    preview_parser.add_argument("--project", required=True, help="Project id")
    preview_parser.add_argument("--table", required=True, help="Table mapping id or source table")
    preview_parser.add_argument("--sample-size", type=int, default=10, help="Rows to sample")

    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    commands = {
        "run": run_pipeline,
        "discover": run_discovery,
        "suggest": run_suggestions,
        "preview": run_preview,
    }
    if args.command not in commands:
        parser.print_help()
        return 1

    try:
        return commands[args.command](args)
    except MigrationEngineError as e:
        logger.error(str(e))
        return 1


def build_config(args) -> ETLPipelineConfig:
    """Pipeline config from an optional file overridden by flags."""
    data = {}
    if args.config:
        with open(args.config) as f:
            data = json.load(f)

    data["project_id"] = args.project
    overrides = {
        "batch_size": args.batch_size,
        "parallelism": args.parallelism,
        "error_handling": args.error_handling,
        "load_strategy": args.load_strategy,
    }
    data.update({key: value for key, value in overrides.items() if value is not None})
    if args.no_validate:
        data["validate_data"] = False
    return ETLPipelineConfig.from_dict(data)


def run_pipeline(args) -> int:
    """Run the pipeline for one project."""
    repository = JsonMappingRepository(args.projects_dir)
    config = build_config(args)
    sink = JsonFileReportSink(args.reports_dir)

    execution = execute_etl_pipeline(config, repository, report_sink=sink)

    print("\n" + "=" * 60)
    print("MIGRATION COMPLETE")
    print("=" * 60)
    print(f"Execution: {execution.id}")
    print(f"Status: {execution.status.value}")
    for stage in execution.stages:
        print(
            f"  {stage.name:<22} {stage.status.value:<10} "
            f"{stage.records_processed} processed, {stage.records_failed} failed"
        )
    print(f"Records Staged: {execution.total_records}")
    print(f"Records Loaded: {execution.processed_records}")
    print(f"Failed: {execution.failed_records}")
    if execution.duration_seconds:
        print(f"Duration: {execution.duration_seconds:.2f} seconds")
    for error in execution.errors:
        print(f"Error ({error['stage']}): {error['error']}")

    return 0 if execution.status == ExecutionStatus.COMPLETED else 1


def run_discovery(args) -> int:
    """Print or save a connection's discovered schema."""
    repository = JsonMappingRepository(args.projects_dir)
    connection = repository.get_connection(args.project, ConnectionRole(args.role))

    with create_adapter(connection) as adapter:
        schema = adapter.discover_schema()

    output = json.dumps(schema.to_dict(), indent=2, default=str)
    if args.output:
        with open(args.output, "w") as f:
            f.write(output)
        print(f"Schema saved to {args.output}")
    else:
        print(output)
    return 0


def run_suggestions(args) -> int:
    """Suggest mappings between a project's source and target schemas."""
    repository = JsonMappingRepository(args.projects_dir)
    source = repository.get_connection(args.project, ConnectionRole.SOURCE)
    target = repository.get_connection(args.project, ConnectionRole.TARGET)

    with create_adapter(source) as source_adapter, create_adapter(target) as target_adapter:
        source_schema = source_adapter.discover_schema()
        target_schema = target_adapter.discover_schema()

    suggester = AutoMappingSuggester()
    result = suggester.suggest(source_schema, target_schema, args.min_confidence)

    print("\n=== Suggested Mappings ===")
    for table in result.table_mappings:
        print(f"\n{table.source_table} -> {table.target_table} ({table.confidence:.2f}, {table.reason})")
        columns = result.columns_for(table.source_table)
        for column in columns:
            transformation = ""
            if column.suggested_transformation:
                transformation = f" [{column.suggested_transformation.type.value}]"
            print(
                f"  {column.source_column} -> {column.target_column} "
                f"({column.confidence:.2f}){transformation}"
            )
        source_table = source_schema.get_table(table.source_table)
        unmatched = unmatched_columns(source_table, columns)
        if unmatched:
            print(f"  Unmatched: {', '.join(unmatched)}")

    if args.apply is not None:
        project = MappingProject(
            project_id=args.project,
            source=source,
            target=target,
            tables=suggester.apply_suggestions(result, args.apply),
        )
        output = args.output or f"{args.project}.suggested.json"
        project.to_json_file(output)
        print(f"\nMappings saved to {output}")
    return 0


def _find_table(repository: JsonMappingRepository, project_id: str, name: str) -> Optional[TableMapping]:
    for mapping in repository.get_table_mappings(project_id):
        if name in (mapping.id, mapping.source_table, mapping.target_table):
            return mapping
    return None


def run_preview(args) -> int:
    """Preview transformed sample rows of one table."""
    repository = JsonMappingRepository(args.projects_dir)
    table_mapping = _find_table(repository, args.project, args.table)
    if table_mapping is None:
        print(f"Table mapping not found: {args.table}")
        return 1

    columns = repository.get_column_mappings(table_mapping.id)
    source = repository.get_connection(args.project, ConnectionRole.SOURCE)
    with create_adapter(source) as adapter:
        preview = generate_preview(adapter, table_mapping, columns, sample_size=args.sample_size)

    print(json.dumps(preview.to_dict(), indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
