"""CLI entrypoint for content-pipeline."""

import json
import logging
from datetime import datetime

import rich_click as click

from content_pipeline import __version__
from content_pipeline.controllers import (
    DequeueCommand,
    EnqueueCommand,
    PipelineCliController,
    QueueCommand,
    RequeueCommand,
    ResearchLookupCommand,
    RetryFailedCommand,
    WorkerCommand,
)
from content_pipeline.http.guard import OutboundFetchRejected
from content_pipeline.storage.common import from_iso

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PipelineCliController()

database_url_option = click.option(
    "--database-url",
    default=None,
    help="SQLAlchemy database URL. Defaults to CONTENT_PIPELINE_DATABASE_URL.",
)


@click.group()
@click.version_option(version=__version__, prog_name="content-pipeline")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def content_pipeline(verbose: bool) -> None:
    """Content job pipeline CLI."""

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@content_pipeline.group()
def queue() -> None:
    """Content queue commands."""


@queue.command("enqueue")
@database_url_option
@click.option("--job-type", required=True, help="Job type, for example keyword_research.")
@click.option("--payload", default="{}", show_default=True, help="JSON object payload.")
@click.option("--priority", type=int, default=0, show_default=True)
@click.option("--max-attempts", type=click.IntRange(min=1), default=3, show_default=True)
@click.option("--domain-id", default=None)
@click.option("--article-id", default=None)
@click.option(
    "--scheduled-for",
    default=None,
    help="ISO-8601 timestamp; future jobs are not dispatched immediately.",
)
def queue_enqueue(  # noqa: PLR0913
    database_url: str | None,
    job_type: str,
    payload: str,
    priority: int,
    max_attempts: int,
    domain_id: str | None,
    article_id: str | None,
    scheduled_for: str | None,
) -> None:
    """Persist one job and mirror it to the dispatch accelerator when enabled."""

    _emit_lines(
        CONTROLLER.enqueue(
            EnqueueCommand(
                database_url=database_url,
                job_type=job_type,
                payload=_parse_payload(payload),
                priority=priority,
                max_attempts=max_attempts,
                domain_id=domain_id,
                article_id=article_id,
                scheduled_for=_parse_datetime(scheduled_for),
            ),
        ),
    )


@queue.command("health")
@database_url_option
def queue_health(database_url: str | None) -> None:
    """Show selected and active dispatch backend."""

    _emit_lines(CONTROLLER.health(QueueCommand(database_url=database_url)))


@queue.command("dequeue")
@database_url_option
@click.option("--max-ids", type=click.IntRange(min=1, max=200), default=20, show_default=True)
def queue_dequeue(database_url: str | None, max_ids: int) -> None:
    """Pop ready job ids from the accelerator."""

    _emit_lines(CONTROLLER.dequeue(DequeueCommand(database_url=database_url, max_ids=max_ids)))


@queue.command("requeue")
@database_url_option
@click.argument("job_ids", nargs=-1, required=True)
def queue_requeue(database_url: str | None, job_ids: tuple[str, ...]) -> None:
    """Push job ids back onto the accelerator pending list."""

    _emit_lines(CONTROLLER.requeue(RequeueCommand(database_url=database_url, job_ids=job_ids)))


@queue.command("stats")
@database_url_option
def queue_stats(database_url: str | None) -> None:
    """Show queue counters, error rate and throughput."""

    _emit_lines(CONTROLLER.stats(QueueCommand(database_url=database_url)))


@queue.command("slo")
@database_url_option
@click.option(
    "--fail-on-critical/--no-fail-on-critical",
    default=False,
    show_default=True,
    help="Exit non-zero when a critical alert fires.",
)
def queue_slo(database_url: str | None, fail_on_critical: bool) -> None:
    """Evaluate queue SLO alerts."""

    result = CONTROLLER.slo(QueueCommand(database_url=database_url))
    _emit_lines(result.lines)
    if fail_on_critical and not result.success:
        raise click.ClickException("Critical queue SLO alert.")


@queue.command("worker")
@database_url_option
@click.option("--once", is_flag=True, default=False, help="Process a single batch.")
@click.option("--max-jobs", type=click.IntRange(min=1), default=None)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before exiting.",
)
def queue_worker(
    database_url: str | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
) -> None:
    """Run the queue worker."""

    _emit_lines(
        CONTROLLER.run_worker(
            WorkerCommand(
                database_url=database_url,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@queue.command("retry-failed")
@database_url_option
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=10, show_default=True)
def queue_retry_failed(database_url: str | None, limit: int) -> None:
    """Reset failed jobs to pending with a fresh attempt budget."""

    _emit_lines(CONTROLLER.retry_failed(RetryFailedCommand(database_url=database_url, limit=limit)))


@content_pipeline.group()
def research() -> None:
    """Research cache commands."""


@research.command("lookup")
@database_url_option
@click.argument("query_text")
@click.option("--domain-priority", type=click.IntRange(min=0), default=0, show_default=True)
def research_lookup(database_url: str | None, query_text: str, domain_priority: int) -> None:
    """Show ranked cache entries and merged data for a query."""

    _emit_lines(
        CONTROLLER.research_lookup(
            ResearchLookupCommand(
                database_url=database_url,
                query_text=query_text,
                domain_priority=domain_priority,
            ),
        ),
    )


@content_pipeline.group()
def fetch() -> None:
    """Outbound fetch guard commands."""


@fetch.command("check-url")
@click.argument("url")
def fetch_check_url(url: str) -> None:
    """Validate a URL against the outbound fetch policy."""

    try:
        lines = CONTROLLER.check_url(url)
    except OutboundFetchRejected as error:
        raise click.ClickException(f"Rejected: {error.reason}") from error
    _emit_lines(lines)


def _parse_payload(raw: str) -> dict[str, object]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise click.BadParameter(f"Invalid JSON: {error}", param_hint="--payload") from error
    if not isinstance(payload, dict):
        raise click.BadParameter("Payload must be a JSON object.", param_hint="--payload")
    return payload


def _parse_datetime(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    try:
        return from_iso(raw)
    except ValueError as error:
        raise click.BadParameter(str(error), param_hint="--scheduled-for") from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    content_pipeline()
