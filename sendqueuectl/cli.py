import json
from dataclasses import asdict

import click

from .compaction import compact_latest_by_key, data_file_status, rotate
from .config import get_config, set_config, queue_path, config_path
from .log import setup_logging
from .manager import QueueManager
from .models import ALL_STATUSES, SendRequest
from .notifications import build_notifier
from .reaper import reap_stale_jobs
from .retry import RetryConfig, RetryPolicy
from .sender import CommandSender, StubSender
from .store import JobStore
from .utils import approval_fingerprint, parse_delay_to_seconds
from .worker import process_queue, run_forever


def build_manager(cfg=None) -> QueueManager:
    cfg = cfg if cfg is not None else get_config(config_path())
    try:
        retry_config = RetryConfig.from_config(cfg)
    except ValueError as e:
        _fail(f"Invalid config: {e}")
    return QueueManager(JobStore(queue_path()), RetryPolicy(retry_config))


def build_sender(cfg):
    command = (cfg.get("send_command") or "").strip()
    if not command:
        return StubSender()
    return CommandSender(command, timeout=int(cfg.get("send_timeout_seconds", "20")))


def _fail(message: str):
    click.secho(f"Error: {message}", fg="red")
    raise SystemExit(1)


@click.group(help="sendqueuectl: persistent send queue with retry and dead-letter handling")
@click.option("--log-level", default=None, help="Log level (default: SENDQ_LOG_LEVEL or WARNING)")
@click.option("--log-format", type=click.Choice(["console", "json"]), default=None)
def cli(log_level, log_format):
    setup_logging(log_level, log_format)


# ---------- Enqueue ----------
@cli.command("enqueue", help="Queue an approved draft for sending")
@click.option("--draft-id", required=True, help="Prepared draft to deliver")
@click.option("--tracking-id", default="", help="Tracking id carried through unchanged")
@click.option("--company-id", default="")
@click.option("--template-id", default="")
@click.option("--ab-variant", type=click.Choice(["A", "B"]), default=None)
@click.option("--to-domain", default="", help="Recipient domain (never the full address)")
@click.option("--approval-fingerprint", "fingerprint_opt", default=None, help="Fingerprint issued by the approval step")
@click.option("--approval-token", default=None, help="Raw approval token; only its fingerprint is stored")
def enqueue_cmd(draft_id, tracking_id, company_id, template_id, ab_variant, to_domain,
                fingerprint_opt, approval_token):
    if fingerprint_opt and approval_token:
        _fail("Use either --approval-fingerprint or --approval-token, not both.")
    if not fingerprint_opt and not approval_token:
        _fail("An approval is required: pass --approval-fingerprint or --approval-token.")
    fingerprint = fingerprint_opt or approval_fingerprint(approval_token)

    result = build_manager().enqueue(SendRequest(
        draft_id=draft_id,
        tracking_id=tracking_id,
        company_id=company_id,
        template_id=template_id,
        ab_variant=ab_variant,
        to_domain=to_domain,
        approval_fingerprint=fingerprint,
    ))
    if not result.success:
        _fail(result.error)
    if result.already_queued:
        click.secho(f"Already queued as {result.job_id} (draft {draft_id})", fg="yellow")
    else:
        click.secho(f"Enqueued {result.job_id} -> draft {draft_id}", fg="green")


# ---------- Processing ----------
def _print_batch(result, as_json: bool):
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return
    mode = "DRY RUN" if result.dry_run else "EXECUTE"
    click.echo(f"Send queue processing ({mode})")
    click.echo(
        f"processed={result.processed} sent={result.sent} blocked={result.blocked} "
        f"retried={result.retried} dead_letter={result.dead_letter} "
        f"failed={result.failed} skipped={result.skipped}"
    )
    for j in result.jobs:
        line = f"{j.job_id:>16} | {j.status:<11} | tracking={j.tracking_id}"
        if j.message_id:
            line += f" | message_id={j.message_id}"
        if j.error_code:
            line += f" | error={j.error_code}"
        if j.next_attempt_at:
            line += f" | next={j.next_attempt_at}"
        if j.reason:
            line += f" | {j.reason}"
        click.echo(line)
    if result.dry_run and result.processed:
        click.echo("To actually send, add --execute.")


@cli.command("process", help="Process up to N ready jobs (dry run unless --execute)")
@click.option("--max-jobs", type=click.IntRange(min=1), default=10, show_default=True)
@click.option("--execute", is_flag=True, default=False, help="Actually send")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output JSON")
def process_cmd(max_jobs, execute, as_json):
    cfg = get_config(config_path())
    try:
        sender = build_sender(cfg)
    except ValueError as e:
        _fail(str(e))
    result = process_queue(build_manager(cfg), sender, cfg, max_jobs=max_jobs,
                           execute=execute, notifier=build_notifier(cfg))
    _print_batch(result, as_json)


@cli.group("worker", help="Foreground batch loop")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--interval", "interval_str", default="1m", show_default=True,
              help="Pause between batches, e.g. 30s, 5m, 1h")
@click.option("--max-jobs", type=click.IntRange(min=1), default=10, show_default=True)
def worker_start(interval_str, max_jobs):
    try:
        interval = parse_delay_to_seconds(interval_str)
    except ValueError as e:
        _fail(str(e))
    cfg = get_config(config_path())
    try:
        sender = build_sender(cfg)
    except ValueError as e:
        _fail(str(e))
    manager = build_manager(cfg)
    notifier = build_notifier(cfg)

    click.secho(f"Processing every {interval}s. Press Ctrl+C to stop…", fg="cyan")
    run_forever(
        lambda: process_queue(manager, sender, get_config(config_path()), max_jobs=max_jobs,
                              execute=True, notifier=notifier),
        interval,
        on_batch=lambda r: _print_batch(r, as_json=False) if r.processed else None,
    )
    click.secho("Worker stopped.", fg="yellow")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--status", type=click.Choice(ALL_STATUSES), default=None)
def list_cmd(status):
    jobs = build_manager().list_jobs(status=status)
    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        click.echo(
            f"{j.job_id:>16} | {j.status:<11} | attempts={j.attempts} | draft={j.draft_id} "
            f"| next={j.next_attempt_at} | last_error={j.last_error_code}"
        )


@cli.command("show")
@click.argument("job_id")
def show_cmd(job_id):
    job = build_manager().get_job(job_id)
    if job is None:
        _fail(f"Job {job_id} not found.")
    click.echo(json.dumps(job.to_dict(), indent=2))


@cli.command("status")
def status_cmd():
    click.echo(json.dumps(build_manager().get_status_counts(), indent=2))


@cli.command("cancel")
@click.argument("job_id")
@click.option("--actor", required=True, help="Who is cancelling")
@click.option("--reason", required=True)
def cancel_cmd(job_id, actor, reason):
    result = build_manager().cancel(job_id, actor, reason)
    if not result.success:
        _fail(result.error)
    click.secho(f"Cancelled {job_id}.", fg="green")


# ---------- DLQ ----------
@cli.group("dlq", help="Dead Letter Queue")
def dlq_group():
    pass


@dlq_group.command("list")
def dlq_list_cmd():
    jobs = build_manager().get_dead_letter_jobs()
    if not jobs:
        click.echo("DLQ is empty.")
        return

    for j in jobs:
        click.echo(f"{j.job_id} | attempts={j.attempts} | last_error={j.last_error_code} | draft={j.draft_id}")


@dlq_group.command("retry")
@click.argument("job_id")
@click.option("--actor", required=True, help="Operator re-queueing the job")
@click.option("--reason", required=True)
def dlq_retry_cmd(job_id, actor, reason):
    result = build_manager().retry_dead_letter(job_id, actor, reason)
    if not result.success:
        _fail(result.error)
    click.secho(f"Re-queued {job_id}.", fg="green")


# ---------- Maintenance ----------
@cli.command("reap", help="Requeue or dead-letter jobs stuck in_progress")
@click.option("--stale-minutes", type=float, default=None, help="Override stale_minutes config")
@click.option("--execute", is_flag=True, default=False)
@click.option("--json", "as_json", is_flag=True, default=False)
def reap_cmd(stale_minutes, execute, as_json):
    cfg = get_config(config_path())
    minutes = stale_minutes if stale_minutes is not None else float(cfg["stale_minutes"])
    result = reap_stale_jobs(build_manager(cfg), stale_minutes=minutes, execute=execute,
                             notifier=build_notifier(cfg))
    if not result.success:
        _fail(result.error)
    if as_json:
        click.echo(json.dumps(asdict(result), indent=2))
        return
    mode = "DRY RUN" if result.dry_run else "EXECUTE"
    click.echo(f"Reap ({mode}): found={result.stale_jobs_found} requeued={result.requeued} "
               f"dead_lettered={result.dead_lettered} skipped={result.skipped}")
    for j in result.jobs:
        click.echo(f"{j.job_id} | {j.action} | attempts={j.attempts} | {j.reason}")


@cli.command("compact", help="Rewrite the job log to one line per job (backup kept)")
@click.option("--execute", is_flag=True, default=False)
@click.option("--rotate", "do_rotate", is_flag=True, default=False,
              help="Move the log aside with a date suffix instead of compacting")
def compact_cmd(execute, do_rotate):
    path = queue_path()
    if do_rotate:
        result = rotate(path, execute=execute)
        if not result.success:
            _fail(result.error)
        click.echo(f"{'Rotated' if execute else 'Would rotate'} {path} -> {result.rotated_path}")
        return

    result = compact_latest_by_key(path, "job_id", execute=execute)
    if not result.success:
        _fail(result.error)
    click.echo(
        f"{'Compacted' if execute else 'Would compact'} {path}: "
        f"{result.input_lines} -> {result.output_lines} lines ({result.reduction_pct}% smaller)"
    )
    if result.backup_path:
        click.echo(f"Backup: {result.backup_path}")


@cli.command("data-status")
def data_status_cmd():
    click.echo(json.dumps(asdict(data_file_status(queue_path())), indent=2))


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
def config_get():
    click.echo(json.dumps(get_config(config_path()), indent=2))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set_cmd(key, value):
    try:
        set_config(key, value, config_path())
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        _fail(str(e))


def main():
    cli()
