from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Docker Service Supervisor CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", default=os.getenv("SVCSUP_ADMIN_USER", "admin"))
    p.add_argument("--password", default=os.getenv("SVCSUP_ADMIN_PASSWORD"))
    p.add_argument("--timeout-s", type=float, default=None, help="Deadline for runtime calls and probes")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("services", help="List services")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    s_au = sub.add_parser("audit", help="Show audit log")
    s_au.add_argument("--limit", type=int, default=20)

    for name, help_text in (
        ("start", "Start a service"),
        ("stop", "Stop a service"),
        ("restart", "Restart a service"),
        ("unlock", "Clear a crash-loop lock"),
        ("probe", "Run a health check now"),
        ("diagnose", "Show the troubleshooting snapshot"),
    ):
        s = sub.add_parser(name, help=help_text)
        s.add_argument("service_id", type=int)

    s_lock = sub.add_parser("lockdown", help="Show, engage or lift the system lockdown")
    s_lock.add_argument("--reason", help="Engage with this reason")
    s_lock.add_argument("--lift", action="store_true")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password) if args.password else None
    params = {"timeout_s": args.timeout_s} if args.timeout_s else None

    if args.cmd == "services":
        r = requests.get(f"{base}/services", auth=auth, timeout=10)
    elif args.cmd in ("events", "audit"):
        r = requests.get(f"{base}/{args.cmd}", params={"limit": args.limit}, auth=auth, timeout=10)
    elif args.cmd in ("start", "stop", "restart", "unlock", "probe"):
        r = requests.post(f"{base}/services/{args.service_id}/{args.cmd}", params=params, auth=auth, timeout=60)
    elif args.cmd == "diagnose":
        r = requests.get(f"{base}/services/{args.service_id}/diagnostics", params=params, auth=auth, timeout=60)
    elif args.cmd == "lockdown":
        if args.lift:
            r = requests.post(f"{base}/system/lockdown/lift", auth=auth, timeout=10)
        elif args.reason:
            r = requests.post(f"{base}/system/lockdown", json={"reason": args.reason}, auth=auth, timeout=10)
        else:
            r = requests.get(f"{base}/system/lockdown", timeout=10)
    else:
        return 2

    _print(r.json())
    return 0 if r.ok else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
