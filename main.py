import click
from pathlib import Path
import logging
import json
import sys
from analysis_worker.settings import settings


def _configure_logging(level=None):
    logging.basicConfig(
        level=level if level is not None else getattr(logging, settings.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@click.group()
def cli():
    """Session analysis worker command line interface."""
    pass


@cli.command()
def worker():
    """Start the analysis worker pool and drain analysis requests from Redis."""
    from analysis_worker.worker import AnalysisWorker
    _configure_logging()

    click.echo("Starting session analysis worker...")
    click.echo(f"Redis URL: {settings.redis_url}")
    click.echo(f"Request queue: {settings.queue_analysis_requests}")
    click.echo(f"Concurrency: {settings.worker_concurrency}")

    try:
        worker_instance = AnalysisWorker()
        worker_instance.start()
    except KeyboardInterrupt:
        click.echo("Worker stopped by user")
    except Exception as e:
        click.echo(f"Worker failed: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--transcript', 'transcript_path', required=True, type=click.Path(exists=True, dir_okay=False),
              help='Path to a session transcript text file')
@click.option('--media-ref', help='Media reference (defaults to the file stem)')
@click.option('--context', 'session_context', default=None, help='Optional session description')
@click.option('--output', default=None, help='Write the final status JSON to this file')
def analyze(transcript_path, media_ref, session_context, output):
    """Run one transcript through the full analysis pipeline."""
    from analysis_worker.api import job
    from analysis_worker.report_store import InMemoryReportStore
    from analysis_worker.transcripts import StaticTranscriptSource
    from analysis_worker.worker import build_manager
    _configure_logging()

    path = Path(transcript_path)
    media_ref = media_ref or path.stem
    source = StaticTranscriptSource({media_ref: path.read_text(encoding='utf-8')})
    manager = build_manager(settings, transcript_source=source, report_store=InMemoryReportStore())
    manager.start()
    try:
        job_id = manager.enqueue(media_ref, session_context=session_context)
        click.echo(f"Analyzing {media_ref} (job {job_id})...")
        manager.wait(job_id, timeout=settings.job_deadline_s + settings.pass_timeout_s)
        status = job(manager, job_id)
    finally:
        manager.stop(wait=True, cancel_active=True)

    body = status.model_dump()
    record = manager.report_store.get(job_id)
    body["quality"] = record.quality if record is not None else None
    text = json.dumps(body, indent=2, ensure_ascii=False)
    if output:
        Path(output).write_text(text, encoding='utf-8')
        click.echo(f"Result saved to {output}")
    else:
        click.echo(text)
    click.echo(f"State: {status.state}, completeness: {status.completeness_score:.2%}, gaps: {len(status.gaps)}")
    sys.exit(0 if status.state in ('complete', 'partial') else 1)


@cli.command()
@click.option('--media-ref', required=True, help='Media reference of the uploaded session')
@click.option('--priority', default=0, help='Higher is analyzed sooner')
@click.option('--force', is_flag=True, help='Supersede an active analysis of the same media')
@click.option('--context', 'session_context', default=None, help='Optional session description')
def submit(media_ref, priority, force, session_context):
    """Push an analysis request onto the Redis request queue."""
    from analysis_worker.queue_handler import RequestQueueHandler
    from analysis_worker.schemas import AnalysisRequest
    _configure_logging()

    request = AnalysisRequest(media_ref=media_ref, priority=priority,
                              force_reanalysis=force, session_context=session_context)
    if not RequestQueueHandler().push_request(request):
        click.echo("Failed to submit analysis request", err=True)
        sys.exit(1)
    click.echo(f"Submitted analysis request for {media_ref}")


@cli.command()
@click.option('--format', type=click.Choice(['json', 'text']), default='text', help='Output format')
def health_check(format):
    """Perform health check and exit with appropriate status code."""
    from analysis_worker.worker import AnalysisWorker
    # Configure logging to ERROR only for health checks
    logging.basicConfig(level=logging.ERROR)

    try:
        worker_instance = AnalysisWorker()
        health_status = worker_instance.check_health()
        overall_healthy = bool(health_status.get("healthy", False))

        if format == 'json':
            click.echo(json.dumps(health_status, indent=2))
        else:
            click.echo("Session Analysis Worker Health Check")
            click.echo("=" * 40)

            click.echo(f"Overall Status: {'✓ HEALTHY' if overall_healthy else '✗ UNHEALTHY'}")

            for check_name, check_data in health_status.get("checks", {}).items():
                status = "✓" if check_data.get("healthy", False) else "✗"
                error = check_data.get("error", "")
                click.echo(f"{check_name.upper()}: {status} {error}")

        sys.exit(0 if overall_healthy else 1)

    except Exception as e:
        if format == 'json':
            click.echo(json.dumps({
                "healthy": False,
                "error": str(e)
            }, indent=2))
        else:
            click.echo(f"Health check failed: {e}")

        sys.exit(1)


if __name__ == '__main__':
    cli()
