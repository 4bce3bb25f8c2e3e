import json
from decimal import Decimal, InvalidOperation

import click
from flask.cli import with_appcontext

from checkout_recovery.billing.coupons import normalize_coupon_code
from checkout_recovery.billing.plans import FREE_LIFETIME_SECONDS, get_plan
from checkout_recovery.errors import RecoveryError
from checkout_recovery.extensions import db
from checkout_recovery.models import BillingCoupon, CallJob, ShopBilling
from checkout_recovery.models.billing_coupon import KIND_AMOUNT, KIND_PERCENT
from checkout_recovery.services.billing import sync_billing_from_provider
from checkout_recovery.services.dispatcher import DEFAULT_BATCH_LIMIT, run_sweep
from checkout_recovery.services.offer_record import OfferRecord, offer_dict


@click.group()
def calls():
    """Call job operations."""


@calls.command("sweep")
@click.option("--limit", type=int, default=DEFAULT_BATCH_LIMIT, show_default=True)
@with_appcontext
def calls_sweep(limit):
    result = run_sweep(batch_limit=limit)
    click.echo(f"processed={result.processed} started={result.started} failed={result.failed}")


@calls.command("show")
@click.argument("job_id")
@with_appcontext
def calls_show(job_id):
    job = db.session.get(CallJob, job_id)
    if not job:
        raise click.ClickException(f"Call job {job_id} not found")
    click.echo(f"id={job.id} shop={job.shop} checkout={job.checkout_id}")
    click.echo(f"status={job.status} attempts={job.attempts} scheduled_for={job.scheduled_for}")
    click.echo(f"provider_call_id={job.provider_call_id or '-'} outcome={job.outcome or '-'}")
    offer = offer_dict(OfferRecord.from_meta(job.meta))
    if offer:
        click.echo("offer=" + json.dumps(offer, sort_keys=True, default=str))


@click.group()
def billing():
    """Shop billing inspection and provider sync."""


@billing.command("show")
@click.option("--shop", required=True)
@with_appcontext
def billing_show(shop):
    row = db.session.get(ShopBilling, shop)
    if not row:
        raise click.ClickException(f"No billing row for {shop}")
    plan = get_plan(row.plan)
    click.echo(f"shop={row.shop} plan={row.plan} status={row.status} pending_plan={row.pending_plan or '-'}")
    click.echo(f"usage_line_item_id={row.usage_line_item_id or '-'}")
    click.echo(f"included_seconds_used={row.included_seconds_used}/{plan.included_seconds}")
    click.echo(f"free_seconds_used={row.free_seconds_used}/{FREE_LIFETIME_SECONDS}")
    click.echo(f"charges={row.charges.count()}")


@billing.command("sync")
@click.option("--shop", required=True)
@with_appcontext
def billing_sync(shop):
    try:
        state = sync_billing_from_provider(shop)
    except RecoveryError as e:
        raise click.ClickException(str(e))
    click.echo(f"shop={shop} active={state['active']} plan={state['plan']}")


@click.group()
def coupons():
    """Billing coupon management."""


@coupons.command("create")
@click.option("--code", required=True)
@click.option("--kind", type=click.Choice([KIND_PERCENT, KIND_AMOUNT]), default=KIND_PERCENT, show_default=True)
@click.option("--value", required=True, type=str)
@click.option("--intervals", type=int, default=None, help="Billing intervals the discount applies to")
@click.option("--plan", "applies_to_plan", default=None)
@click.option("--starts-at", type=click.DateTime(), default=None, help="Naive UTC")
@click.option("--expires-at", type=click.DateTime(), default=None, help="Naive UTC")
@click.option("--max-total-uses", type=int, default=None)
@click.option("--max-uses-per-shop", type=int, default=None)
@with_appcontext
def coupons_create(code, kind, value, intervals, applies_to_plan, starts_at, expires_at,
                   max_total_uses, max_uses_per_shop):
    normalized = normalize_coupon_code(code)
    if not normalized:
        raise click.ClickException("Coupon code is empty")
    if db.session.get(BillingCoupon, normalized):
        raise click.ClickException("Coupon already exists")
    if applies_to_plan:
        try:
            get_plan(applies_to_plan.upper())
        except ValueError as e:
            raise click.ClickException(str(e))
        applies_to_plan = applies_to_plan.upper()

    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise click.ClickException(f"Invalid value: {value}")

    db.session.add(BillingCoupon(
        code=normalized,
        kind=kind,
        value=amount,
        duration_intervals=intervals,
        applies_to_plan=applies_to_plan,
        starts_at=starts_at,
        expires_at=expires_at,
        max_total_uses=max_total_uses,
        max_uses_per_shop=max_uses_per_shop,
    ))
    db.session.commit()
    click.echo(f"Coupon created code={normalized} kind={kind} value={value}")


def register_cli(app):
    app.cli.add_command(calls)
    app.cli.add_command(billing)
    app.cli.add_command(coupons)
