from __future__ import annotations

import argparse
from datetime import date
from decimal import Decimal

from .auth_models import Role
from .auth_service import cleanup_expired, create_user
from .billing_service import list_invoices
from .db import engine
from .exceptions import ClinicError
from .inventory_service import check_expiry, list_items
from .ledger import ledger_summary
from .notifications import mark_sent, pending_deliveries
from .seed import seed_base
from .services import init_db, list_doctors_flat, list_patients_flat


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    seed_base()
    print("Database initialised and base data seeded.")


def cmd_create_user(args: argparse.Namespace) -> None:
    profile = {}
    if args.specialization:
        profile["specialization"] = args.specialization
    if args.fee is not None:
        profile["consultation_fee"] = args.fee
    if args.license:
        profile["license_number"] = args.license
    u = create_user(args.email, args.name, Role(args.role), args.password, args.phone, **profile)
    print(f"User created: {u['id']} | {u['role']} | {u['email']}")


def cmd_list(args: argparse.Namespace) -> None:
    if args.entity == "doctors":
        for d in list_doctors_flat():
            print(f"{d['id']} | {d['full_name']} | {d['specialization'] or '-'}")
    elif args.entity == "patients":
        for p in list_patients_flat():
            print(f"{p['id']} | {p['full_name']} | {p['email']} | visits: {p['appointments']}")
    elif args.entity == "items":
        for i in list_items(limit=1000)["items"]:
            flag = " LOW" if i["is_low_stock"] else ""
            print(f"{i['sku']} | {i['name']} | stock {i['current_stock']}{flag}")
    elif args.entity == "invoices":
        for inv in list_invoices(limit=100)["items"]:
            print(
                f"{inv['invoice_number']} | {inv['invoice_date']} | {inv['patient_name']} | "
                f"{inv['status']} | total {inv['total_amount']} | due {inv['amount_due']}"
            )


def cmd_notifications(args: argparse.Namespace) -> None:
    """
    Stand-in for an external e-mail gateway:
    - reads the undelivered notifications
    - prints them on the console
    - optionally marks them as sent
    """
    pending = pending_deliveries(limit=args.limit)
    if not pending:
        print("No pending notifications.")
        return

    for n in pending:
        print(f"[{n['id']}] {n['type']} | {n['created_at'].isoformat()} | {n['email']} | {n['message']}")
        if args.mark_sent:
            mark_sent(n["id"])

    if args.mark_sent:
        print("Notifications marked as sent.")


def cmd_check_expiry(args: argparse.Namespace) -> None:
    today = date.fromisoformat(args.today) if args.today else None
    res = check_expiry(today)
    print(f"Expired alerts: {res['expired_alerts']} | expiring soon: {res['expiring_alerts']}")


def cmd_cleanup(args: argparse.Namespace) -> None:
    res = cleanup_expired()
    print(f"Sessions removed: {res['sessions_removed']} | OTP codes removed: {res['otps_removed']}")


def cmd_ledger_summary(args: argparse.Namespace) -> None:
    date_from = date.fromisoformat(args.date_from) if args.date_from else None
    date_to = date.fromisoformat(args.date_to) if args.date_to else None
    summary = ledger_summary(date_from, date_to)
    for entry_type, row in summary["by_type"].items():
        print(f"{entry_type:16} | {row['count']:5} | debit {row['debit']} | credit {row['credit']}")
    print(f"Net balance: {summary['net_balance']}")


def cmd_db_path(args: argparse.Namespace) -> None:
    print("ENGINE URL:", engine.url)
    print("DB FILE   :", engine.url.database)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="clinic", description="Clinic management command line tools")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Create tables and seed base data")
    p_init.set_defaults(func=cmd_init)

    p_user = sub.add_parser("create-user", help="Create a user account")
    p_user.add_argument("--email", required=True)
    p_user.add_argument("--name", required=True)
    p_user.add_argument("--role", required=True, choices=[r.value for r in Role])
    p_user.add_argument("--password", default=None, help="Required for staff roles")
    p_user.add_argument("--phone", default=None)
    p_user.add_argument("--specialization", default=None)
    p_user.add_argument("--fee", type=Decimal, default=None, help="Doctor consultation fee")
    p_user.add_argument("--license", default=None)
    p_user.set_defaults(func=cmd_create_user)

    p_list = sub.add_parser("list", help="List entities")
    p_list.add_argument("entity", choices=["doctors", "patients", "items", "invoices"])
    p_list.set_defaults(func=cmd_list)

    p_not = sub.add_parser("notifications", help="Read and deliver pending notifications (simulated)")
    p_not.add_argument("--limit", type=int, default=50)
    p_not.add_argument("--mark-sent", action="store_true", help="Mark as sent after printing")
    p_not.set_defaults(func=cmd_notifications)

    p_exp = sub.add_parser("check-expiry", help="Raise expiry alerts for inventory batches")
    p_exp.add_argument("--today", default=None, help="ISO date, default today")
    p_exp.set_defaults(func=cmd_check_expiry)

    p_clean = sub.add_parser("cleanup", help="Delete expired sessions and OTP codes")
    p_clean.set_defaults(func=cmd_cleanup)

    p_led = sub.add_parser("ledger-summary", help="Ledger totals per entry type")
    p_led.add_argument("--from", dest="date_from", default=None, help="ISO date")
    p_led.add_argument("--to", dest="date_to", default=None, help="ISO date")
    p_led.set_defaults(func=cmd_ledger_summary)

    p_db = sub.add_parser("db-path", help="Show the database in use")
    p_db.set_defaults(func=cmd_db_path)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    init_db()  # tables always present
    try:
        args.func(args)
    except ClinicError as e:
        raise SystemExit(f"Error: {e.message}")


if __name__ == "__main__":
    main()
