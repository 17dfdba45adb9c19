from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Progressive Canary Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("health", help="Show controller health")
    sub.add_parser("targets", help="List tracked target workloads")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--namespace")
    s_ev.add_argument("--experiment")

    s_rec = sub.add_parser("reconcile", help="Queue an experiment for reconciliation")
    s_rec.add_argument("experiment", help="namespace/name, or name with --namespace")
    s_rec.add_argument("--namespace", default="default")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "health":
        r = requests.get(f"{base}/healthz", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "targets":
        _print(requests.get(f"{base}/targets", timeout=10).json())
        return 0

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.namespace and args.experiment:
            params.update(namespace=args.namespace, experiment=args.experiment)
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "reconcile":
        namespace, _, name = args.experiment.rpartition("/")
        namespace = namespace or args.namespace
        r = requests.post(f"{base}/experiments/{namespace}/{name}/reconcile", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
