#!/usr/bin/env python3
"""CLI for the price intelligence engine."""

import json
import logging
import sys
from datetime import datetime, timezone

import click

import config
import db
from cache import RecommendationCache
from config import Settings
from engine import PriceEngine
from errors import EngineError
from models import (
    DailyDigest,
    InventoryItem,
    PricePoint,
    Product,
    ProductCategory,
    alert_to_dict,
    as_utc_if_naive,
    lookup_retailer,
)
from notifier import MemorySink, format_alert
from scheduler import local_now, next_run_time, read_last_run


class ReplayClock:
    """Engine clock that follows the timestamps of replayed events."""

    def __init__(self, start: datetime):
        self.now = start

    def advance(self, when: datetime):
        if when > self.now:
            self.now = when

    def __call__(self) -> datetime:
        return self.now


def _timestamp(value: str) -> datetime:
    return as_utc_if_naive(datetime.fromisoformat(value))


def apply_event(engine: PriceEngine, event: dict, clock: ReplayClock) -> list:
    """Apply one replay event to the engine; returns the alerts it raised."""
    if event.get("timestamp"):
        clock.advance(_timestamp(event["timestamp"]))
    before = len(engine.alerts())
    kind = event.get("type")

    if kind == "product":
        engine.register_product(Product(
            product_id=event["product_id"],
            name=event.get("name", event["product_id"]),
            category=ProductCategory(event.get("category", "other")),
            brand=event.get("brand"),
        ))
    elif kind == "price":
        extra = {"point_id": event["point_id"]} if event.get("point_id") else {}
        point = PricePoint(
            retailer=lookup_retailer(event.get("retailer", "unknown")),
            price=float(event["price"]),
            timestamp=clock(),
            in_stock=event.get("in_stock", True),
            shipping_cost=event.get("shipping_cost"),
            url=event.get("url"),
            **extra,
        )
        engine.record_price(event["product_id"], point)
    elif kind == "track":
        engine.start_tracking(event["product_id"], event.get("target_price"))
    elif kind == "budget":
        engine.set_budget(float(event["monthly_limit"]), event.get("category_limits"))
    elif kind == "spend":
        engine.record_budget_spend(event.get("category", "other"), float(event["amount"]))
    elif kind == "rollover":
        engine.rollover_budget_period()
    elif kind == "inventory":
        engine.add_inventory_item(InventoryItem(
            product_id=event["product_id"],
            current_quantity=int(event["current_quantity"]),
            preferred_quantity=int(event["preferred_quantity"]),
            reorder_threshold=int(event["reorder_threshold"]),
            average_consumption_days=event.get("average_consumption_days"),
        ))
    elif kind == "purchase":
        engine.record_purchase(event["product_id"], int(event["quantity"]))
    elif kind == "consume":
        engine.record_consumption(event["product_id"], int(event["quantity"]))
    else:
        raise ValueError(f"unknown event type {kind!r}")

    return engine.alerts()[before:]


def _print_digest(digest: DailyDigest):
    click.echo(f"\n{'=' * 40}")
    click.echo(f"Deals:             {digest.deal_count}")
    click.echo(f"Potential savings: ${digest.total_savings:.2f}")
    click.echo(f"Expiring soon:     {digest.urgent_deals}")
    click.echo(f"Restock reminders: {digest.restock_reminders}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--db", "db_path", default=config.DB_PATH, show_default=True, help="SQLite database path")
@click.pass_context
def cli(ctx, verbose, db_path):
    """Price Intelligence Engine"""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


def _store(ctx) -> db.SqliteStore:
    return db.SqliteStore(ctx.obj["db_path"])


@cli.command()
@click.argument("events_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Print alerts and digest as JSON lines")
def replay(events_file, as_json):
    """Feed a JSONL event file through a fresh in-memory engine."""
    clock = ReplayClock(datetime(1970, 1, 1, tzinfo=timezone.utc))
    sink = MemorySink()
    engine = PriceEngine(db.MemoryStore(), sink=sink, clock=clock)
    rejected = 0
    try:
        with open(events_file, encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError as e:
                    click.echo(f"Line {lineno}: invalid JSON: {e}", err=True)
                    sys.exit(1)
                try:
                    raised = apply_event(engine, event, clock)
                except (EngineError, ValueError, KeyError) as e:
                    rejected += 1
                    click.echo(f"Line {lineno}: rejected: {e}", err=True)
                    continue
                for alert in raised:
                    if as_json:
                        click.echo(json.dumps({"alert": alert_to_dict(alert)}))
                    else:
                        title, body, _ = format_alert(alert, lambda pid: engine.ledgers.product(pid).name)
                        click.echo(f"[{alert.kind.value}] {title} {body}")

        digest = engine.get_dashboard_digest()
        if as_json:
            click.echo(json.dumps({"digest": digest.to_dict(), "rejected": rejected}))
        else:
            _print_digest(digest)
            click.echo(f"Rejected events:   {rejected}")
            click.echo(f"Notifications:     {len(sink.deliveries)}")
    finally:
        engine.stop()


@cli.command()
@click.pass_context
def status(ctx):
    """Show the last and next batch run."""
    store = _store(ctx)
    settings = Settings.load(store)
    last_run = read_last_run(store)
    now = local_now()
    next_run = next_run_time(now, last_run, settings.batch_run_at, settings.batch_period)
    click.echo(f"Last batch run: {last_run.isoformat() if last_run else 'never'}")
    click.echo(f"Next batch run: {next_run.isoformat()}")


@cli.command()
@click.pass_context
def cache(ctx):
    """List cached recommendation entries and their state."""
    store = _store(ctx)
    settings = Settings.load(store)
    rc = RecommendationCache(store, ttl=settings.cache_ttl, stale_grace=settings.stale_grace)
    try:
        keys = rc.keys()
        if not keys:
            click.echo("Cache is empty.")
            return
        click.echo(f"{'Key':<30} {'State':<8} {'Generated':<26} {'Expires':<26}")
        click.echo("-" * 92)
        for key in keys:
            entry = rc.peek(key)
            generated = entry.generated_at.isoformat() if entry else "-"
            expires = entry.expires_at.isoformat() if entry else "-"
            click.echo(f"{key:<30} {rc.state(key).value:<8} {generated:<26} {expires:<26}")
    finally:
        rc.shutdown()


@cli.command()
@click.argument("key")
@click.pass_context
def invalidate(ctx, key):
    """Remove one cache entry."""
    store = _store(ctx)
    rc = RecommendationCache(store)
    try:
        if rc.invalidate(key):
            click.echo(f"Invalidated {key}")
        else:
            click.echo(f"No cache entry for {key}")
            sys.exit(1)
    finally:
        rc.shutdown()


@cli.command(name="settings")
@click.option("--set", "changes", multiple=True, metavar="KEY=VALUE", help="Update a setting (value is JSON)")
@click.pass_context
def settings_cmd(ctx, changes):
    """Show or update persisted settings."""
    store = _store(ctx)
    current = Settings.load(store)
    if changes:
        parsed = {}
        for change in changes:
            key, sep, value = change.partition("=")
            if not sep:
                raise click.BadParameter(f"expected KEY=VALUE, got {change!r}")
            try:
                parsed[key] = json.loads(value)
            except json.JSONDecodeError:
                parsed[key] = value
        current = current.update(store, **parsed)
    for key, value in sorted(vars(current).items()):
        click.echo(f"{key:<28} {json.dumps(value)}")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True)
@click.option("--reload", is_flag=True)
def serve(host, port, reload):
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("app:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    cli()
