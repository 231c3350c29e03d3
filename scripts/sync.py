"""Run reconciliation tasks from the command line.

This module serves as a CLI wrapper around idmsync.services. Storage is held
in-process, so several tasks listed in one ``run`` share the same identity
store (e.g. a pull followed by a push).

    python scripts/sync.py tasks
    python scripts/sync.py run hr-pull ldap-push --show-reports
    python scripts/sync.py check ldap
    python scripts/sync.py verify-audit
    python scripts/sync.py events --category PROPAGATION --subcategory ldap
"""
from __future__ import annotations
import argparse
import json
import os
import sys
from pathlib import Path

SCRIPT_DIR = Path(__file__).parent
PROJECT_ROOT = SCRIPT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from idmsync.config import load_settings
from idmsync.core.errors import IdmError
from idmsync.core.security import AuthContext
from idmsync.core.tasks import ExecutionStatus
from idmsync.services import Services
from scripts import audit


def _print_execution(execution, show_reports: bool) -> None:
    summary = ", ".join(f"{label}={count}" for label, count in sorted(execution.summary().items())) or "no records"
    print(f"[run] {execution.task}: {execution.status.value} ({summary})")
    if execution.message:
        print(f"[run] {execution.task}: {execution.message}")
    if show_reports:
        for report in execution.reports:
            print("  " + json.dumps(report.to_dict(), default=str))


def main() -> None:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(description="idmsync reconciliation helper")
    parser.add_argument("--resources-file", default=os.environ.get("IDM_RESOURCES_FILE"),
                        help="Registry YAML (default: config/resources.yaml)")
    parser.add_argument("--operator",
                        help="Operator identifier for audit logs (default: IDM_ADMIN_USER)")

    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("tasks")

    sr = sub.add_parser("run")
    sr.add_argument("keys", nargs="+", help="Task keys, executed in order")
    sr.add_argument("--show-reports", action="store_true")

    sc = sub.add_parser("check")
    sc.add_argument("resource")

    sub.add_parser("verify-audit")

    se = sub.add_parser("events")
    se.add_argument("--category", help="LOGIC, PROPAGATION, PULL, PUSH, REMEDIATION or TASK")
    se.add_argument("--subcategory", help="Entity kind, resource or task type")

    args = parser.parse_args()

    if not args.cmd:
        parser.print_help()
        return

    if args.cmd == "events":
        for record in audit.iter_audit_events(args.category, args.subcategory):
            print(f"{record['timestamp']} {record['category']:<11} {record['subcategory']:<12} "
                  f"{record['event']:<10} {record['result']:<7} {record.get('who')} {record.get('key') or ''}")
        return

    if args.cmd == "verify-audit":
        total, valid = audit.verify_audit_log()
        print(f"Audit log: {valid}/{total} events with valid signatures")
        sys.exit(0 if total == valid else 1)

    if args.resources_file:
        os.environ["IDM_RESOURCES_FILE"] = args.resources_file
    settings = load_settings()
    services = Services.from_settings(settings)
    auth = AuthContext.admin(args.operator or settings.admin_user)

    try:
        if args.cmd == "tasks":
            for task in services.task_logic.list(auth):
                print(f"{task['key']:<24} {task['type']:<5} {task['resource']}")
        elif args.cmd == "run":
            failed = False
            for key in args.keys:
                execution = services.task_logic.execute(auth, key)
                _print_execution(execution, args.show_reports)
                failed = failed or execution.status == ExecutionStatus.FAILURE
            # Let memberships jobs and async propagation finish before reporting
            services.job_runner.wait()
            total, remediations = services.remediation_logic.list(auth)
            if total:
                print(f"[run] {total} remediation(s) pending")
                for remediation in remediations:
                    print("  " + json.dumps(remediation.to_dict(), default=str))
            if failed:
                sys.exit(1)
        elif args.cmd == "check":
            ok, error = services.resource_logic.check(auth, args.resource)
            print(f"[check] {args.resource}: {'OK' if ok else f'FAILED ({error})'}")
            if not ok:
                sys.exit(1)
        else:
            parser.print_help()
    except IdmError as e:
        print(f"[{args.cmd}] Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        services.shutdown()


if __name__ == "__main__":
    main()
