import json
import logging
import os
import sqlite3

import click
import redis

from .config import DB_FILE
from .db import init_db, connect_db
from .errors import NotifyError
from .models import JOB_STATES, NotificationKind
from .repository import get_config, set_config, load_settings, list_jobs, counts
from .service import build_components, build_stores, run_service

# Store/queue failures: sqlite locked or corrupt, redis unreachable.
BACKEND_ERRORS = (sqlite3.Error, redis.RedisError)


def _abort(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


def _settings(ctx):
    db_path = ctx.obj["db_path"]
    conn = connect_db(db_path)
    try:
        return load_settings(conn, db_path=db_path)
    finally:
        conn.close()


@click.group(help="notifyq — subscription notification queue")
@click.option("--db", "db_path", default=None, help="SQLite database file (default: $NOTIFYQ_DB or notifyq.db)")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, db_path, verbose):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path or os.environ.get("NOTIFYQ_DB", DB_FILE)
    # Ensure DB/schema exist before any command runs
    init_db(ctx.obj["db_path"])


# ---------- Enqueue ----------
@cli.command("enqueue", help="Queue a notification job")
@click.option("--kind", required=True, type=click.Choice([k.value for k in NotificationKind]))
@click.option("--email", required=True, help="Recipient address")
@click.option("--name", required=True, help="Recipient display name")
@click.option("--plan", "plan_name", required=True, help="Plan name")
@click.option("--start-date", default=None)
@click.option("--end-date", default=None)
@click.option("--cancel-date", default=None)
@click.option("--expiry-date", default=None)
@click.option("--price", default=None, type=float)
@click.option("--feature", "features", multiple=True, help="Plan feature (repeatable)")
@click.pass_context
def enqueue_cmd(ctx, kind, email, name, plan_name, start_date, end_date, cancel_date,
                expiry_date, price, features):
    payload = {
        "email": email,
        "name": name,
        "plan_name": plan_name,
        "start_date": start_date,
        "end_date": end_date,
        "cancel_date": cancel_date,
        "expiry_date": expiry_date,
        "price": price,
        "features": list(features) or None,
    }
    payload = {k: v for k, v in payload.items() if v is not None}
    try:
        settings = _settings(ctx)
        # The running `worker start` process drains the queue.
        components = build_components(settings, attach_worker=False)
        job_id = components.enqueuer.enqueue(kind, payload)
        click.secho(f"Enqueued {job_id} ({kind} -> {email})", fg="green")
    except (ValueError, NotifyError, click.ClickException, sqlite3.Error, redis.RedisError) as e:
        _abort(e)


# ---------- Worker ----------
@cli.group("worker", help="Run the delivery worker")
def worker_group():
    pass


@worker_group.command("start")
@click.pass_context
def worker_start(ctx):
    settings = _settings(ctx)
    click.secho("Starting notification worker. Press Ctrl+C to stop…", fg="cyan")
    try:
        run_service(settings)
    except BACKEND_ERRORS as e:
        _abort(e)
    click.secho("Worker stopped.", fg="yellow")


# ---------- Scanner ----------
@cli.command("scan", help="Run one expiration scan now")
@click.pass_context
def scan_cmd(ctx):
    try:
        components = build_components(_settings(ctx), attach_worker=False)
        report = components.scanner.run_once()
    except BACKEND_ERRORS as e:
        _abort(e)
    click.echo(json.dumps({"found": report.found, "expired": report.expired, "failed": report.failed}, indent=2))


# ---------- Jobs ----------
@cli.command("list")
@click.option("--state", type=click.Choice(list(JOB_STATES)), default=None)
@click.pass_context
def list_cmd(ctx, state):
    try:
        store, _ = build_stores(_settings(ctx))
        rows = list_jobs(store, state=state)
    except BACKEND_ERRORS as e:
        _abort(e)

    if not rows:
        click.echo("No jobs.")
        return

    for j in rows:
        click.echo(
            f"{j.id:>40} | {j.state:<13} | attempts={j.attempts}/{j.max_attempts} "
            f"| kind={j.kind} | to={j.payload.get('email')} | last_error={j.last_error}"
        )


@cli.command("status")
@click.pass_context
def status_cmd(ctx):
    try:
        store, queue = build_stores(_settings(ctx))
        summary = counts(store, queue)
    except BACKEND_ERRORS as e:
        _abort(e)
    click.echo(json.dumps(summary, indent=2))


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    conn = connect_db(ctx.obj["db_path"])
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    conn = connect_db(ctx.obj["db_path"])
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        conn.close()


def main():
    cli(obj={})
