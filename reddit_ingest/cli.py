"""Command-line interface for the Reddit archive ingestion core."""

import asyncio
import dataclasses
import json
import logging
import logging.config
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from typing_extensions import Annotated

from reddit_ingest.config import Config
from reddit_ingest.coordinator.batch_coordinator import BatchProcessingCoordinator, job_id_for
from reddit_ingest.coordinator.checkpoints import CheckpointManager, JsonFileCheckpointStore
from reddit_ingest.dedup.detector import DuplicateDetector
from reddit_ingest.exceptions import IngestError
from reddit_ingest.merge.temporal_merge import TemporalMergeEngine
from reddit_ingest.models.mapping import SUBMISSION, classify_item, raw_to_comment, raw_to_submission
from reddit_ingest.models.records import ApiContentBatch
from reddit_ingest.models.source import SourceType
from reddit_ingest.monitoring.metrics import PrometheusExporter
from reddit_ingest.monitoring.processing_metrics import ProcessingMetricsCollector
from reddit_ingest.monitoring.resource_monitor import ResourceMonitor
from reddit_ingest.pipeline.content_batch import ContentBatchProcessor
from reddit_ingest.storage.csv_sink import COMMENT_COLUMNS, SUBMISSION_COLUMNS, CsvSink
from reddit_ingest.stream.processor import StreamProcessor

app = typer.Typer(help="Reddit archive ingestion - stream, merge and deduplicate Reddit data")

logger = logging.getLogger(__name__)


def setup_logging(log_level: str = "INFO") -> None:
    """
    Set up logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)

    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "standard",
                "stream": "ext://sys.stderr",
            },
            "file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": log_level,
                "formatter": "standard",
                "filename": "logs/ingest.log",
                "maxBytes": 10485760,  # 10 MB
                "backupCount": 5,
                "encoding": "utf8",
            },
        },
        "loggers": {
            "": {
                "handlers": ["console", "file"],
                "level": log_level,
                "propagate": True
            },
            "asyncio": {
                "level": "WARNING",
            },
        }
    }

    logging.config.dictConfig(log_config)


def load_config(config_path: str, loglevel: Optional[str], verbose: bool) -> Config:
    """Load and validate configuration, then configure logging. Exits on invalid config."""
    config = Config.from_files(config_path)
    log_level = "DEBUG" if verbose else (loglevel or config.log_level)
    setup_logging(log_level.upper())

    validation_errors = config.validate()
    if validation_errors:
        for error in validation_errors:
            logger.error(f"Configuration error: {error}")
        logger.critical("Invalid configuration, aborting")
        sys.exit(1)
    return config


def start_exporter(config: Config) -> Optional[PrometheusExporter]:
    if not config.monitoring.enable_prometheus:
        return None
    exporter = PrometheusExporter(port=config.monitoring.prometheus_port)
    exporter.start_server()
    return exporter


def read_jsonl(path: str) -> List[Dict[str, Any]]:
    """Read a plain (uncompressed) NDJSON file, skipping blank lines."""
    items = []
    with open(path, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                items.append(json.loads(line))
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping invalid JSON on line {line_number} of {path}: {e}")
    return items


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


@app.command("check-setup")
def check_setup(
    config: Annotated[str, typer.Option("--config", "-c", help="Path to configuration file")] = "config.yaml",
    loglevel: Annotated[Optional[str], typer.Option("--loglevel", "-l", help="Logging level")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose output")] = False,
) -> None:
    """
    Check that the decompression utility is installed and the configuration is valid.
    """
    config_obj = load_config(config, loglevel, verbose)
    processor = StreamProcessor(config_obj.decompressor)

    result = asyncio.run(processor.validate_setup())
    print_json(dataclasses.asdict(result))
    if not result.valid:
        sys.exit(1)


@app.command()
def sample(
    file: Annotated[str, typer.Argument(help="Compressed archive to sample")],
    config: Annotated[str, typer.Option("--config", "-c", help="Path to configuration file")] = "config.yaml",
    loglevel: Annotated[Optional[str], typer.Option("--loglevel", "-l", help="Logging level")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose output")] = False,
) -> None:
    """
    Read the first lines of an archive and report what they contain.
    """
    config_obj = load_config(config, loglevel, verbose)
    processor = StreamProcessor(config_obj.decompressor)

    try:
        result = asyncio.run(processor.sample_file(file))
    except IngestError as e:
        logger.error(f"Sampling failed: {e.message}")
        print_json(e.to_dict())
        sys.exit(1)

    summary = dataclasses.asdict(result)
    summary["valid_ratio"] = result.valid_ratio
    print_json(summary)


async def run_ingest(config: Config, files: List[str]) -> bool:
    """
    Process archive files as concurrent jobs.

    Args:
        config: Application configuration
        files: Archive files to process

    Returns:
        True when every job succeeded
    """
    prometheus_exporter = start_exporter(config)
    collector = ProcessingMetricsCollector()

    output_dir = config.output_dir
    pipeline = ContentBatchProcessor(
        submission_sink=CsvSink(os.path.join(output_dir, "submissions.csv"), SUBMISSION_COLUMNS),
        comment_sink=CsvSink(os.path.join(output_dir, "comments.csv"), COMMENT_COLUMNS),
    )
    coordinator = BatchProcessingCoordinator(
        config.batch,
        StreamProcessor(
            config.decompressor,
            metrics_collector=collector,
            prometheus_exporter=prometheus_exporter,
        ),
        pipeline,
        checkpoint_manager=CheckpointManager(
            JsonFileCheckpointStore(config.batch.checkpoint_dir),
            max_checkpoints_per_job=config.batch.max_checkpoints_per_job,
        ),
        resource_monitor=ResourceMonitor(prometheus_exporter=prometheus_exporter),
        prometheus_exporter=prometheus_exporter,
    )

    logger.info(f"Processing {len(files)} archive(s) with {coordinator.get_configuration()}")
    results = await asyncio.gather(
        *(coordinator.process_archive_file(path) for path in files),
        return_exceptions=True,
    )

    succeeded = True
    report = []
    for path, result in zip(files, results):
        if isinstance(result, BaseException):
            succeeded = False
            logger.error(f"Job for {path} failed: {result}")
            error = result.to_dict() if isinstance(result, IngestError) else {"message": str(result)}
            report.append({"file_path": path, "job_id": job_id_for(path), "success": False, "error": error})
        else:
            report.append(
                {
                    "file_path": path,
                    "job_id": result.job_id,
                    "success": result.success,
                    "total_processed_lines": result.total_processed_lines,
                    "valid_items": result.valid_items,
                    "error_count": result.error_count,
                    "batches_processed": result.batches_processed,
                    "processing_time_ms": round(result.processing_time_ms, 1),
                    "resumed_from_checkpoint": result.resumed_from_checkpoint,
                }
            )

    print_json(
        {
            "jobs": report,
            "aggregate": collector.get_aggregated_metrics(),
            "performance": collector.get_performance_summary(),
        }
    )
    return succeeded


@app.command()
def ingest(
    files: Annotated[List[str], typer.Argument(help="Compressed archives to process")],
    config: Annotated[str, typer.Option("--config", "-c", help="Path to configuration file")] = "config.yaml",
    loglevel: Annotated[Optional[str], typer.Option("--loglevel", "-l", help="Logging level")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose output")] = False,
) -> None:
    """
    Stream archives into normalized submission and comment CSV files.

    Each file runs as its own checkpointed job; all jobs run concurrently.
    """
    config_obj = load_config(config, loglevel, verbose)
    logger.info(f"Starting ingestion of {len(files)} archive(s)")

    try:
        succeeded = asyncio.run(run_ingest(config_obj, files))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.critical(f"Unhandled exception: {str(e)}", exc_info=True)
        sys.exit(1)

    if not succeeded:
        sys.exit(1)


@app.command()
def checkpoints(
    job_id: Annotated[str, typer.Argument(help="Job id, or the archive path the job was run for")],
    config: Annotated[str, typer.Option("--config", "-c", help="Path to configuration file")] = "config.yaml",
    delete: Annotated[bool, typer.Option("--delete", help="Delete the job's checkpoints")] = False,
    loglevel: Annotated[Optional[str], typer.Option("--loglevel", "-l", help="Logging level")] = None,
) -> None:
    """
    List (or delete) the checkpoints recorded for a job.
    """
    config_obj = load_config(config, loglevel, False)
    if os.path.exists(job_id):
        job_id = job_id_for(job_id)

    manager = CheckpointManager(
        JsonFileCheckpointStore(config_obj.batch.checkpoint_dir),
        max_checkpoints_per_job=config_obj.batch.max_checkpoints_per_job,
    )

    if delete:
        removed = asyncio.run(manager.delete_checkpoints(job_id))
        print_json({"job_id": job_id, "deleted": removed})
        return

    history = asyncio.run(manager.get_all(job_id))
    if not history:
        logger.error(f"No checkpoints found for job {job_id}")
        sys.exit(1)
    print_json({"job_id": job_id, "checkpoints": [checkpoint.to_dict() for checkpoint in history]})


def build_api_batch(raw_items: List[Dict[str, Any]], source_type: SourceType, batch_id: str) -> ApiContentBatch:
    """Normalize raw API objects into an ApiContentBatch, dropping unrecognized shapes."""
    batch = ApiContentBatch(source_type=source_type, batch_id=batch_id)
    for raw in raw_items:
        kind = classify_item(raw)
        if kind is None:
            logger.warning(f"Skipping unrecognized API item {raw.get('id') if isinstance(raw, dict) else raw!r}")
            continue
        if kind == SUBMISSION:
            batch.posts.append(raw_to_submission(raw))
        else:
            batch.comments.append(raw_to_comment(raw))
    return batch


@app.command()
def merge(
    archive_file: Annotated[str, typer.Argument(help="Uncompressed NDJSON extracted from an archive")],
    api_file: Annotated[str, typer.Argument(help="NDJSON of items collected from the Reddit API")],
    source_type: Annotated[str, typer.Option("--source-type", "-s", help="API collection mode")] = SourceType.API_CHRONOLOGICAL.value,
    output: Annotated[Optional[str], typer.Option("--output", "-o", help="Output file (default: stdout)")] = None,
    config: Annotated[str, typer.Option("--config", "-c", help="Path to configuration file")] = "config.yaml",
    loglevel: Annotated[Optional[str], typer.Option("--loglevel", "-l", help="Logging level")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose output")] = False,
) -> None:
    """
    Merge archive and API records into one deduplicated timeline.
    """
    config_obj = load_config(config, loglevel, verbose)

    try:
        api_source = SourceType.parse(source_type)
    except ValueError:
        logger.error(f"Unknown source type {source_type!r}")
        sys.exit(1)

    prometheus_exporter = start_exporter(config_obj)
    engine = TemporalMergeEngine(config_obj.merge, prometheus_exporter=prometheus_exporter)
    detector = DuplicateDetector(config_obj.duplicates, prometheus_exporter=prometheus_exporter)

    try:
        historical = asyncio.run(ContentBatchProcessor().process_batch(read_jsonl(archive_file)))
        api_batch = build_api_batch(read_jsonl(api_file), api_source, f"api_{Path(api_file).stem}")

        merged = engine.merge_temporal_data(historical, api_batch)
        kept, analysis = detector.detect_and_filter_duplicates(merged.merged_items)
    except IngestError as e:
        logger.error(f"Merge failed: {e.message}")
        print_json(e.to_dict())
        sys.exit(1)
    except OSError as e:
        logger.error(f"Cannot read merge input: {e}")
        sys.exit(1)

    deduplicated = dataclasses.replace(merged, merged_items=kept)
    result = engine.convert_to_llm_input(deduplicated)
    result["source_metadata"]["duplicates_removed"] = analysis.duplicates_found
    result["source_metadata"]["gaps"] = [
        {
            "start": gap.start_timestamp,
            "end": gap.end_timestamp,
            "duration_hours": round(gap.duration_hours, 2),
            "severity": gap.severity,
            "description": gap.description,
        }
        for gap in merged.processing_stats.gaps_detected
    ]
    if merged.validation is not None:
        result["source_metadata"]["quality_score"] = merged.validation.quality_score

    text = json.dumps(result, indent=2, default=str)
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(text)
        logger.info(f"Wrote {len(kept)} merged items to {output}")
    else:
        print(text)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
