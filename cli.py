from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _load_json(path: str) -> dict:
    if path == "-":
        return json.load(sys.stdin)
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _report(r: requests.Response) -> int:
    try:
        _print(r.json())
    except ValueError:
        print(r.text)
    return 0 if r.ok else 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Game Server Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", help="API basic auth user")
    p.add_argument("--password", help="API basic auth password")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("list", help="List deployments")

    s_show = sub.add_parser("show", help="Show one deployment with its resources")
    s_show.add_argument("deployment_id")

    s_tpl = sub.add_parser("template", help="Register a template version")
    s_tpl.add_argument("--name", required=True)
    s_tpl.add_argument("--version", default="v1")
    s_tpl.add_argument("--allow", action="append", default=[], help="Allowed mutation glob, e.g. Workload.*.replicas")

    s_create = sub.add_parser("create", help="Create a deployment from a desired spec file")
    s_create.add_argument("--id")
    s_create.add_argument("--template", required=True)
    s_create.add_argument("--template-version", default="v1")
    s_create.add_argument("--namespace", required=True)
    s_create.add_argument("--spec", required=True, help="Path to a JSON desired spec ('-' for stdin)")
    s_create.add_argument("--drift-policy", choices=["enforce", "adopt", "ignore"])
    s_create.add_argument("--ignore", action="append", default=[], help="Field path glob to ignore")
    s_create.add_argument("--auto-adopt", action="store_true")
    s_create.add_argument("--recreate-on-immutable", action="store_true")

    s_apply = sub.add_parser("apply", help="Replace a deployment's desired spec")
    s_apply.add_argument("deployment_id")
    s_apply.add_argument("--spec", required=True, help="Path to a JSON desired spec ('-' for stdin)")
    s_apply.add_argument("--expected-generation", type=int)

    for name, help_text in (
        ("pause", "Pause reconciliation"),
        ("resume", "Resume reconciliation"),
        ("reconcile", "Trigger a reconcile now"),
        ("delete", "Tear down a deployment"),
        ("snapshot", "Show the observed snapshot"),
    ):
        s = sub.add_parser(name, help=help_text)
        s.add_argument("deployment_id")

    s_ev = sub.add_parser("events", help="Show a deployment's events")
    s_ev.add_argument("deployment_id")
    s_ev.add_argument("--after", type=int, default=0)
    s_ev.add_argument("--limit", type=int, default=50)

    s_ap = sub.add_parser("approvals", help="List adoption approvals")
    s_ap.add_argument("--deployment-id")
    s_ap.add_argument("--state", default="pending")

    s_dec = sub.add_parser("decide", help="Approve or reject an adoption request")
    s_dec.add_argument("approval_id", type=int)
    s_dec.add_argument("decision", choices=["approve", "reject"])

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    http = requests.Session()
    if args.user and args.password:
        http.auth = (args.user, args.password)

    if args.cmd == "list":
        return _report(http.get(f"{base}/deployments", timeout=10))

    if args.cmd == "show":
        return _report(http.get(f"{base}/deployments/{args.deployment_id}", timeout=10))

    if args.cmd == "template":
        payload = {"name": args.name, "version": args.version, "allowed_mutations": args.allow}
        return _report(http.post(f"{base}/templates", json=payload, timeout=10))

    if args.cmd == "create":
        payload = {
            "id": args.id,
            "template_name": args.template,
            "template_version": args.template_version,
            "namespace": args.namespace,
            "desired_spec": _load_json(args.spec),
            "drift_policy": args.drift_policy,
            "ignore_fields": args.ignore,
            "auto_adopt": args.auto_adopt,
            "recreate_on_immutable": args.recreate_on_immutable,
        }
        return _report(http.post(f"{base}/deployments", json=payload, timeout=30))

    if args.cmd == "apply":
        payload = {"desired_spec": _load_json(args.spec), "expected_generation": args.expected_generation}
        return _report(http.put(f"{base}/deployments/{args.deployment_id}/spec", json=payload, timeout=30))

    if args.cmd in {"pause", "resume", "reconcile"}:
        return _report(http.post(f"{base}/deployments/{args.deployment_id}/{args.cmd}", timeout=10))

    if args.cmd == "delete":
        return _report(http.delete(f"{base}/deployments/{args.deployment_id}", timeout=10))

    if args.cmd == "snapshot":
        return _report(http.get(f"{base}/deployments/{args.deployment_id}/snapshot", timeout=10))

    if args.cmd == "events":
        params = {"after": args.after, "limit": args.limit}
        return _report(http.get(f"{base}/deployments/{args.deployment_id}/events", params=params, timeout=10))

    if args.cmd == "approvals":
        params = {"state": args.state}
        if args.deployment_id:
            params["deployment_id"] = args.deployment_id
        return _report(http.get(f"{base}/approvals", params=params, timeout=10))

    if args.cmd == "decide":
        return _report(http.post(f"{base}/approvals/{args.approval_id}/{args.decision}", timeout=10))

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
