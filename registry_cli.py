"""
registry_cli.py — operator commands against the registry database and ledger

Run:
  python registry_cli.py reconcile                 # one sweep, same lock as the timer
  python registry_cli.py status PROJ_...           # project view
  python registry_cli.py list --state REGISTERED
  python registry_cli.py import-legacy projects.json [--dry-run]
"""
import argparse
import json
import sys

from carbon_registry.api import build_services, project_view
from carbon_registry.config import Settings
from carbon_registry.errors import PreconditionFailed, RegistryError
from carbon_registry.legacy import legacy_project
from carbon_registry.log import configure_logging
from carbon_registry.utils import parse_iso, to_public, utcnow
from carbon_registry.workflow import run_inline


def p(obj):
    print(json.dumps(to_public(obj), indent=2, default=str))


def cmd_reconcile(services, args):
    now = parse_iso(args.now) if args.now else None
    p(services.sweeper.run_once(now=now))


def cmd_status(services, args):
    p(project_view(services.workflow.get_project_status(args.project_id)))


def cmd_list(services, args):
    p([project_view(pr) for pr in services.workflow.list_projects(args.state)])


def cmd_import_legacy(services, args):
    with open(args.file, encoding="utf-8") as f:
        docs = json.load(f)
    if isinstance(docs, dict):
        docs = [docs]
    store = services.workflow.store
    now = utcnow()
    created, skipped = 0, []
    for doc in docs:
        try:
            project = legacy_project(doc, now)
        except ValueError as e:
            skipped.append({"doc": doc.get("Project_ID") or str(doc.get("_id")), "reason": str(e)})
            continue
        problems = project.violations()
        if problems:
            skipped.append({"doc": project.project_id, "reason": "; ".join(problems)})
            continue
        if args.dry_run:
            created += 1
            continue
        try:
            store.create(project)
            created += 1
        except PreconditionFailed as e:
            skipped.append({"doc": project.project_id, "reason": e.message})
    p({"created": created, "skipped": skipped, "dry_run": args.dry_run})


def main(argv=None):
    ap = argparse.ArgumentParser(description="Carbon registry operator CLI")
    sub = ap.add_subparsers(dest="command", required=True)

    rc = sub.add_parser("reconcile", help="run one reconciliation sweep")
    rc.add_argument("--now", help="ISO timestamp to sweep as of (default: now)")
    rc.set_defaults(fn=cmd_reconcile)

    st = sub.add_parser("status", help="show one project")
    st.add_argument("project_id")
    st.set_defaults(fn=cmd_status)

    ls = sub.add_parser("list", help="list projects")
    ls.add_argument("--state")
    ls.set_defaults(fn=cmd_list)

    im = sub.add_parser("import-legacy", help="import project documents from the previous backend")
    im.add_argument("file", help="JSON array, e.g. from mongoexport --jsonArray")
    im.add_argument("--dry-run", action="store_true")
    im.set_defaults(fn=cmd_import_legacy)

    args = ap.parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level, "console", stream=sys.stderr)
    services = build_services(settings, schedule=run_inline)
    try:
        args.fn(services, args)
    except RegistryError as e:
        print(f"❌ {e.code}: {e.message}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
