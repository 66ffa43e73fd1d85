"""CLI interface for billing administration and the invoice scheduler."""

import argparse
import json
import sqlite3
import sys
from dataclasses import asdict
from datetime import date, datetime
from pathlib import Path

from . import analytics, billing, db, invoices, retainers
from .config import load_config
from .invoice_scheduler import InvoiceScheduler, SchedulerError, run_daemon
from .logging_setup import setup_logging


def _load(args):
    return load_config(Path(args.config) if args.config else None)


def _parse_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _parse_model(value: str | None) -> billing.BillingModel | None:
    """A billing model as JSON, or just its type name (e.g. "hourly")."""
    if not value:
        return None
    if value.lstrip().startswith("{"):
        return billing.BillingModel.from_dict(json.loads(value))
    return billing.BillingModel(type=value.lower())


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_init(args):
    """Initialize the database."""
    config = _load(args)
    config.db_path.parent.mkdir(parents=True, exist_ok=True)
    db.init_db(config.db_path)
    print(f"Database initialized at {config.db_path}")


# ============================================================================
# Billing records
# ============================================================================


def cmd_client_add(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        db.create_client(conn, args.client_id, args.name, email=args.email)
    print(f"Client created: {args.client_id}")


def cmd_user_add(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        db.upsert_user(conn, args.user_id, args.name, hourly_cost=args.hourly_cost)
    print(f"User saved: {args.user_id}")


def cmd_project_add(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        if not db.client_exists(conn, args.client):
            print(f"Client {args.client} not found", file=sys.stderr)
            sys.exit(1)
        db.create_project(
            conn, args.project_id, args.client, args.name,
            budget=args.budget,
            start_date=_parse_date(args.start),
            end_date=_parse_date(args.end),
        )
    print(f"Project created: {args.project_id}")


def cmd_time_add(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        entry_id = db.add_time_entry(
            conn, args.project_id, args.user, args.hours, args.rate,
            _parse_date(args.date) or date.today(),
            description=args.description,
            billable=not args.non_billable,
            task_id=args.task,
        )
    print(f"Time entry created: {entry_id}")


def cmd_milestone(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        if args.milestone_action == "add":
            milestone_id = db.add_milestone(
                conn, args.project_id, args.name, args.amount,
                target_date=_parse_date(args.target_date),
                description=args.description,
            )
            print(f"Milestone created: {milestone_id}")
        elif args.milestone_action == "complete":
            milestone = billing.complete_milestone(conn, args.milestone_id, _parse_date(args.date))
            print(f"Milestone {milestone.id} completed on {milestone.completed_date}")
        elif args.milestone_action == "list":
            milestones = db.list_milestones(conn, args.project_id)
            if not milestones:
                print("No milestones found")
            for m in milestones:
                state = "invoiced" if m.invoiced else "completed" if m.completed else "pending"
                print(f"[{m.id}] {state:10} {m.amount:>12,.2f}  {m.name}")
        else:
            _print_json(billing.fixed_fee_summary(conn, args.project_id))


def cmd_contract_add(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        contract_id = db.create_contract(
            conn, args.project_id, args.contract_type, args.amount,
            _parse_date(args.start) or date.today(),
            frequency=args.frequency,
        )
    print(f"{args.contract_type.capitalize()} contract created: {contract_id}")


def cmd_retainer(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        if args.retainer_action == "use":
            usage = retainers.record_usage(
                conn, args.project_id, args.amount,
                hours=args.hours, description=args.description,
                usage_date=_parse_date(args.date),
            )
            print(f"Recorded {usage.amount:,.2f}, remaining balance {usage.remaining_balance:,.2f}")
        else:
            _print_json(retainers.retainer_status(conn, args.project_id))


# ============================================================================
# Recurring rules and jobs
# ============================================================================


def _format_rule(rule: db.RecurringRule) -> str:
    state = "active" if rule.is_active else "inactive"
    model = (rule.billing_model or {}).get("type", "flat")
    return (
        f"[{rule.id}] {state:8} {rule.frequency:9} {model:12} "
        f"next {rule.next_due.isoformat()}  {rule.name} ({rule.client_id})"
    )


def cmd_rule(args):
    config = _load(args)
    scheduler = InvoiceScheduler(config)
    action = args.rule_action

    if action == "add":
        rule = scheduler.create_rule(
            client_id=args.client,
            name=args.name,
            frequency=args.frequency,
            start_date=_parse_datetime(args.start),
            amount=args.amount,
            project_id=args.project,
            description=args.description,
            currency=args.currency,
            day_of_week=args.day_of_week,
            day_of_month=args.day_of_month,
            end_date=_parse_datetime(args.end),
            billing_model=_parse_model(args.model),
            tax_rate=args.tax_rate,
            auto_send=args.auto_send,
        )
        print(f"Rule created: {rule.id} (next due {rule.next_due.isoformat()})")
    elif action == "list":
        rules = scheduler.list_rules(active_only=args.active)
        if args.json:
            _print_json([asdict(r) for r in rules])
        elif not rules:
            print("No rules found")
        else:
            for rule in rules:
                print(_format_rule(rule))
    elif action == "show":
        _print_json(asdict(scheduler.get_rule(args.rule_id)))
    elif action == "update":
        changes = {}
        for field_name in ("name", "description", "amount", "currency", "frequency",
                           "day_of_week", "day_of_month", "tax_rate"):
            value = getattr(args, field_name)
            if value is not None:
                changes[field_name] = value
        if args.start:
            changes["start_date"] = _parse_datetime(args.start)
        if args.end:
            changes["end_date"] = _parse_datetime(args.end)
        if args.model:
            changes["billing_model"] = _parse_model(args.model)
        if args.auto_send is not None:
            changes["auto_send"] = args.auto_send == "on"
        if not changes:
            print("Nothing to update", file=sys.stderr)
            sys.exit(1)
        rule = scheduler.update_rule(args.rule_id, **changes)
        print(_format_rule(rule))
    elif action == "deactivate":
        scheduler.deactivate_rule(args.rule_id)
        print(f"Rule {args.rule_id} deactivated")
    elif action == "activate":
        rule = scheduler.activate_rule(args.rule_id)
        print(f"Rule {args.rule_id} activated (next due {rule.next_due.isoformat()})")
    elif action == "delete":
        removed = scheduler.delete_rule(args.rule_id)
        print(f"Rule {args.rule_id} deleted ({removed} pending job(s) cancelled)")


def _format_job(job: db.ScheduledJob) -> str:
    line = (
        f"[{job.id}] {job.status:10} rule {job.rule_id}  "
        f"{job.scheduled_for.isoformat()}  attempts {job.attempts}"
    )
    if job.invoice_id:
        line += f"  invoice {job.invoice_id}"
    if job.error_message:
        line += f"\n      error: {job.error_message}"
    return line


def cmd_jobs(args):
    config = _load(args)
    scheduler = InvoiceScheduler(config)
    action = args.jobs_action

    if action == "list":
        jobs = scheduler.list_jobs(status=args.status, rule_id=args.rule)
        if args.json:
            _print_json([asdict(j) for j in jobs])
        elif not jobs:
            print("No jobs found")
        else:
            for job in jobs:
                print(_format_job(job))
    elif action == "stats":
        _print_json(scheduler.get_job_statistics())
    elif action == "retry":
        jobs = scheduler.retry_failed_jobs()
        if not jobs:
            print("No failed jobs to retry")
        for job in jobs:
            print(_format_job(job))
    elif action == "reset":
        job = scheduler.reset_job(args.job_id)
        print(f"Job {job.id} reset to pending")


def cmd_run(args):
    """Run the invoice scheduler once."""
    config = _load(args)
    scheduler = InvoiceScheduler(config)
    results = scheduler.run_pass(_parse_datetime(args.now))
    print(
        f"Completed {results['jobs_completed']} job(s), failed {results['jobs_failed']}, "
        f"{results['invoices_overdue']} invoice(s) newly overdue"
    )


def cmd_daemon(args):
    config = _load(args)
    run_daemon(config)


def cmd_upcoming(args):
    config = _load(args)
    upcoming = InvoiceScheduler(config).get_upcoming_invoices(days=args.days)
    if args.json:
        _print_json(upcoming)
        return
    if not upcoming:
        print("No invoices due")
        return
    for item in upcoming:
        print(
            f"{item['next_due']}  rule {item['rule_id']:<4} {item['amount']:>12,.2f} "
            f"{item['currency']}  {item['name']} ({item['client_id']})"
        )


# ============================================================================
# Invoices
# ============================================================================


def _format_invoice(invoice: db.Invoice) -> str:
    return (
        f"[{invoice.id}] {invoice.invoice_number}  {invoice.status:9} "
        f"{invoice.total:>12,.2f} {invoice.currency}  due {invoice.due_date}  "
        f"{invoice.client_id}/{invoice.project_id or '-'}"
    )


def cmd_invoice(args):
    config = _load(args)
    action = args.invoice_action

    with db.get_db(config.db_path) as conn:
        if action == "list":
            found = invoices.list_invoices(
                conn, project_id=args.project, client_id=args.client, status=args.status,
            )
            if args.json:
                _print_json([asdict(i) for i in found])
            elif not found:
                print("No invoices found")
            else:
                for invoice in found:
                    print(_format_invoice(invoice))
        elif action == "show":
            _print_json(invoices.invoice_document(invoices.get_invoice(conn, args.invoice_id)))
        elif action == "send":
            delivery = _print_json if args.print else None
            invoice = invoices.send_invoice(conn, args.invoice_id, delivery=delivery)
            print(f"Invoice {invoice.invoice_number} sent", file=sys.stderr if args.print else sys.stdout)
        elif action == "paid":
            invoice = invoices.mark_paid(conn, args.invoice_id)
            print(f"Invoice {invoice.invoice_number} marked paid")
        elif action == "void":
            invoice = invoices.void_invoice(conn, args.invoice_id)
            print(f"Invoice {invoice.invoice_number} cancelled")
        elif action == "overdue":
            overdue = invoices.mark_overdue_invoices(conn)
            print(f"{len(overdue)} invoice(s) marked overdue")
            for invoice in overdue:
                print(_format_invoice(invoice))


def cmd_resolve(args):
    """Resolve a billing model for a project, optionally creating the invoice."""
    config = _load(args)
    model = _parse_model(args.model)

    with db.get_db(config.db_path) as conn:
        result = billing.resolve(
            conn, args.project_id, model,
            period_start=_parse_date(args.start),
            period_end=_parse_date(args.end),
            default_period_days=config.billing.default_period_days,
        )
        if not args.create:
            _print_json(result.to_dict())
            return

        project = db.get_project(conn, args.project_id)
        invoice = invoices.create_invoice_from_result(
            conn, result,
            project_id=project.id,
            client_id=project.client_id,
            tax_rate=args.tax_rate if args.tax_rate is not None else config.billing.tax_rate,
            due_in_days=config.billing.payment_terms_days,
            currency=config.billing.currency,
            notes=args.notes,
        )
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)
    print(_format_invoice(invoice))


# ============================================================================
# Analytics
# ============================================================================


def cmd_profitability(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        _print_json(analytics.project_profitability(conn, args.project_id, config.analytics))


def cmd_ltv(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        _print_json(analytics.client_lifetime_value(conn, args.client_id, config.analytics))


def cmd_forecast(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        projections = analytics.revenue_forecast(conn, args.months, config.analytics)
    if args.json:
        _print_json(projections)
        return
    for p in projections:
        print(
            f"{p['period']}  projected {p['projected_revenue']:>12,.2f}  "
            f"confirmed {p['confirmed_revenue']:>12,.2f}  "
            f"recurring {p['recurring_revenue']:>12,.2f}  confidence {p['confidence']}%"
        )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="tally billing CLI")
    parser.add_argument("-c", "--config", help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (DEBUG) logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # init
    subparsers.add_parser("init", help="Initialize database")

    # client / user / project
    client_parser = subparsers.add_parser("client", help="Client records")
    client_sub = client_parser.add_subparsers(dest="client_action", required=True)
    client_add = client_sub.add_parser("add", help="Add a client")
    client_add.add_argument("client_id", help="Client ID")
    client_add.add_argument("name", help="Client name")
    client_add.add_argument("--email", help="Billing email")

    user_parser = subparsers.add_parser("user", help="Team members and their labor cost")
    user_sub = user_parser.add_subparsers(dest="user_action", required=True)
    user_add = user_sub.add_parser("add", help="Add or update a user")
    user_add.add_argument("user_id", help="User ID")
    user_add.add_argument("name", help="Display name")
    user_add.add_argument("--hourly-cost", type=float, help="Internal hourly cost")

    project_parser = subparsers.add_parser("project", help="Project records")
    project_sub = project_parser.add_subparsers(dest="project_action", required=True)
    project_add = project_sub.add_parser("add", help="Add a project")
    project_add.add_argument("project_id", help="Project ID")
    project_add.add_argument("--client", required=True, help="Client ID")
    project_add.add_argument("--name", required=True, help="Project name")
    project_add.add_argument("--budget", type=float, help="Project budget")
    project_add.add_argument("--start", help="Start date (YYYY-MM-DD)")
    project_add.add_argument("--end", help="End date (YYYY-MM-DD)")

    # time
    time_parser = subparsers.add_parser("time", help="Time entries")
    time_sub = time_parser.add_subparsers(dest="time_action", required=True)
    time_add = time_sub.add_parser("add", help="Record a time entry")
    time_add.add_argument("project_id", help="Project ID")
    time_add.add_argument("-u", "--user", required=True, help="User ID")
    time_add.add_argument("--hours", type=float, required=True, help="Hours worked")
    time_add.add_argument("--rate", type=float, required=True, help="Billing rate")
    time_add.add_argument("--date", help="Date (YYYY-MM-DD, default today)")
    time_add.add_argument("-d", "--description", default="", help="Description")
    time_add.add_argument("--task", help="Task ID")
    time_add.add_argument("--non-billable", action="store_true", help="Not billable")

    # milestone
    milestone_parser = subparsers.add_parser("milestone", help="Fixed-fee milestones")
    milestone_sub = milestone_parser.add_subparsers(dest="milestone_action", required=True)
    milestone_add = milestone_sub.add_parser("add", help="Add a milestone")
    milestone_add.add_argument("project_id", help="Project ID")
    milestone_add.add_argument("name", help="Milestone name")
    milestone_add.add_argument("amount", type=float, help="Milestone amount")
    milestone_add.add_argument("--target-date", help="Target date (YYYY-MM-DD)")
    milestone_add.add_argument("-d", "--description", default="", help="Description")
    milestone_complete = milestone_sub.add_parser("complete", help="Mark a milestone completed")
    milestone_complete.add_argument("milestone_id", type=int, help="Milestone ID")
    milestone_complete.add_argument("--date", help="Completion date (YYYY-MM-DD, default today)")
    milestone_list = milestone_sub.add_parser("list", help="List project milestones")
    milestone_list.add_argument("project_id", help="Project ID")
    milestone_summary = milestone_sub.add_parser("summary", help="Fixed-fee budget summary")
    milestone_summary.add_argument("project_id", help="Project ID")

    # contract / retainer
    contract_parser = subparsers.add_parser("contract", help="Retainer and subscription contracts")
    contract_sub = contract_parser.add_subparsers(dest="contract_action", required=True)
    contract_add = contract_sub.add_parser("add", help="Add a contract")
    contract_add.add_argument("project_id", help="Project ID")
    contract_add.add_argument("contract_type", choices=["retainer", "subscription"], help="Contract type")
    contract_add.add_argument("amount", type=float, help="Retainer or periodic amount")
    contract_add.add_argument("--frequency", default="monthly", help="Billing frequency")
    contract_add.add_argument("--start", help="Start date (YYYY-MM-DD, default today)")

    retainer_parser = subparsers.add_parser("retainer", help="Retainer usage")
    retainer_sub = retainer_parser.add_subparsers(dest="retainer_action", required=True)
    retainer_use = retainer_sub.add_parser("use", help="Record usage against the retainer")
    retainer_use.add_argument("project_id", help="Project ID")
    retainer_use.add_argument("amount", type=float, help="Amount consumed")
    retainer_use.add_argument("--hours", type=float, default=0, help="Hours consumed")
    retainer_use.add_argument("-d", "--description", default="", help="Description")
    retainer_use.add_argument("--date", help="Usage date (YYYY-MM-DD, default today)")
    retainer_status = retainer_sub.add_parser("status", help="Show retainer balance")
    retainer_status.add_argument("project_id", help="Project ID")

    # rule
    rule_parser = subparsers.add_parser("rule", help="Recurring invoice rules")
    rule_sub = rule_parser.add_subparsers(dest="rule_action", required=True)
    rule_add = rule_sub.add_parser("add", help="Create a rule")
    rule_add.add_argument("--client", required=True, help="Client ID")
    rule_add.add_argument("--name", required=True, help="Rule name")
    rule_add.add_argument("--frequency", required=True, help="weekly, monthly, quarterly or yearly")
    rule_add.add_argument("--start", required=True, help="Start date (ISO format)")
    rule_add.add_argument("--amount", type=float, default=0, help="Flat amount per invoice")
    rule_add.add_argument("--project", help="Project ID")
    rule_add.add_argument("--description", help="Line item description")
    rule_add.add_argument("--currency", help="Currency (default from config)")
    rule_add.add_argument("--day-of-week", type=int, help="Weekly anchor, 0 = Sunday")
    rule_add.add_argument("--day-of-month", type=int, help="Monthly anchor, 1-31")
    rule_add.add_argument("--end", help="End date (ISO format)")
    rule_add.add_argument("--model", help="Billing model: type name or JSON")
    rule_add.add_argument("--tax-rate", type=float, help="Tax rate override (fraction)")
    rule_add.add_argument("--auto-send", action="store_true", help="Send invoices when generated")
    rule_list = rule_sub.add_parser("list", help="List rules")
    rule_list.add_argument("--active", action="store_true", help="Only active rules")
    rule_list.add_argument("--json", action="store_true", help="JSON output")
    for name in ("show", "deactivate", "activate", "delete"):
        p = rule_sub.add_parser(name, help=f"{name.capitalize()} a rule")
        p.add_argument("rule_id", type=int, help="Rule ID")
    rule_update = rule_sub.add_parser("update", help="Update a rule")
    rule_update.add_argument("rule_id", type=int, help="Rule ID")
    rule_update.add_argument("--name", help="Rule name")
    rule_update.add_argument("--description", help="Line item description")
    rule_update.add_argument("--amount", type=float, help="Flat amount per invoice")
    rule_update.add_argument("--currency", help="Currency")
    rule_update.add_argument("--frequency", help="weekly, monthly, quarterly or yearly")
    rule_update.add_argument("--day-of-week", type=int, help="Weekly anchor, 0 = Sunday")
    rule_update.add_argument("--day-of-month", type=int, help="Monthly anchor, 1-31")
    rule_update.add_argument("--start", help="Start date (ISO format)")
    rule_update.add_argument("--end", help="End date (ISO format)")
    rule_update.add_argument("--model", help="Billing model: type name or JSON")
    rule_update.add_argument("--tax-rate", type=float, help="Tax rate override (fraction)")
    rule_update.add_argument("--auto-send", choices=["on", "off"], help="Send invoices when generated")

    # jobs
    jobs_parser = subparsers.add_parser("jobs", help="Scheduled invoice jobs")
    jobs_sub = jobs_parser.add_subparsers(dest="jobs_action", required=True)
    jobs_list = jobs_sub.add_parser("list", help="List jobs")
    jobs_list.add_argument("-s", "--status", help="Filter by status")
    jobs_list.add_argument("--rule", type=int, help="Filter by rule ID")
    jobs_list.add_argument("--json", action="store_true", help="JSON output")
    jobs_sub.add_parser("stats", help="Job statistics")
    jobs_sub.add_parser("retry", help="Retry failed jobs with attempts left")
    jobs_reset = jobs_sub.add_parser("reset", help="Reset a failed job to pending")
    jobs_reset.add_argument("job_id", type=int, help="Job ID")

    # run / daemon / upcoming
    run_parser = subparsers.add_parser("run", help="Process due jobs once")
    run_parser.add_argument("--now", help="Override the current time (ISO format)")
    subparsers.add_parser("daemon", help="Run the scheduler daemon")
    upcoming_parser = subparsers.add_parser("upcoming", help="Rules coming due")
    upcoming_parser.add_argument("--days", type=int, help="Window in days (default from config)")
    upcoming_parser.add_argument("--json", action="store_true", help="JSON output")

    # invoice
    invoice_parser = subparsers.add_parser("invoice", help="Invoices")
    invoice_sub = invoice_parser.add_subparsers(dest="invoice_action", required=True)
    invoice_list = invoice_sub.add_parser("list", help="List invoices")
    invoice_list.add_argument("--project", help="Filter by project")
    invoice_list.add_argument("--client", help="Filter by client")
    invoice_list.add_argument("-s", "--status", help="Filter by status")
    invoice_list.add_argument("--json", action="store_true", help="JSON output")
    for name, help_text in (
        ("show", "Show an invoice"),
        ("send", "Mark a draft sent"),
        ("paid", "Mark an invoice paid"),
        ("void", "Cancel an invoice"),
    ):
        p = invoice_sub.add_parser(name, help=help_text)
        p.add_argument("invoice_id", type=int, help="Invoice ID")
        if name == "send":
            p.add_argument("--print", action="store_true", help="Print the structured invoice for delivery")
    invoice_sub.add_parser("overdue", help="Flag sent invoices past their due date")

    # resolve
    resolve_parser = subparsers.add_parser("resolve", help="Resolve a billing model for a project")
    resolve_parser.add_argument("project_id", help="Project ID")
    resolve_parser.add_argument("--model", required=True, help="Billing model: type name or JSON")
    resolve_parser.add_argument("--start", help="Period start (YYYY-MM-DD)")
    resolve_parser.add_argument("--end", help="Period end (YYYY-MM-DD)")
    resolve_parser.add_argument("--create", action="store_true", help="Create the invoice")
    resolve_parser.add_argument("--tax-rate", type=float, help="Tax rate override (fraction)")
    resolve_parser.add_argument("--notes", help="Invoice notes")

    # analytics
    profitability_parser = subparsers.add_parser("profitability", help="Project profitability")
    profitability_parser.add_argument("project_id", help="Project ID")
    ltv_parser = subparsers.add_parser("ltv", help="Client lifetime value")
    ltv_parser.add_argument("client_id", help="Client ID")
    forecast_parser = subparsers.add_parser("forecast", help="Revenue forecast")
    forecast_parser.add_argument("-m", "--months", type=int, default=12, help="Months to project")
    forecast_parser.add_argument("--json", action="store_true", help="JSON output")

    return parser


def main(argv: list[str] | None = None):
    parser = _build_parser()
    args = parser.parse_args(argv)

    # Load config and setup logging (except for init which doesn't need full config)
    if args.command != "init":
        config = _load(args)
        setup_logging(config, verbose=args.verbose, daemon_mode=args.command == "daemon")

    commands = {
        "init": cmd_init,
        "client": cmd_client_add,
        "user": cmd_user_add,
        "project": cmd_project_add,
        "time": cmd_time_add,
        "milestone": cmd_milestone,
        "contract": cmd_contract_add,
        "retainer": cmd_retainer,
        "rule": cmd_rule,
        "jobs": cmd_jobs,
        "run": cmd_run,
        "daemon": cmd_daemon,
        "upcoming": cmd_upcoming,
        "invoice": cmd_invoice,
        "resolve": cmd_resolve,
        "profitability": cmd_profitability,
        "ltv": cmd_ltv,
        "forecast": cmd_forecast,
    }

    try:
        commands[args.command](args)
    except (
        billing.BillingError,
        invoices.InvoiceError,
        SchedulerError,
        db.PersistenceError,
        sqlite3.IntegrityError,
        ValueError,
    ) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
