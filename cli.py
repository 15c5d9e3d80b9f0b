from __future__ import annotations

import argparse
import json
import sys
import time

import requests

# Exit codes by API result code.
EXIT_CODES = {
    "success": 0,
    "conflict": 3,
    "invalid-policy": 4,
    "not-found": 5,
    "timeout": 6,
}
TERMINAL_STATES = {"completed", "failed", "rolled_back"}


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _exit_code(r: requests.Response) -> int:
    if r.ok:
        return 0
    try:
        body = r.json()
    except ValueError:
        return 1
    result = body.get("result") if isinstance(body, dict) else None
    if result is None and r.status_code == 422:
        # request validation error from the API framework
        result = "invalid-policy"
    return EXIT_CODES.get(result, 1)


def _show(r: requests.Response) -> int:
    try:
        _print(r.json())
    except ValueError:
        print(r.text)
    return _exit_code(r)


def _spec_payload(args) -> dict:
    return {"image": args.image, "size_class": args.size_class, "zones": args.zone or []}


def _wait(base: str, update_id: str, interval_s: float, timeout_s: float) -> int:
    deadline = time.time() + timeout_s
    while True:
        r = requests.get(f"{base}/updates/{update_id}", timeout=10)
        if not r.ok:
            return _show(r)
        st = r.json()
        if st["state"] in TERMINAL_STATES:
            _print(st)
            if st["state"] == "completed":
                return 0
            return EXIT_CODES.get(st.get("result"), 1) or 1
        if time.time() >= deadline:
            _print(st)
            return EXIT_CODES["timeout"]
        time.sleep(interval_s)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="fleetroll rolling-deployment controller CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("fleet", help="Describe the fleet")

    s_create = sub.add_parser("create-fleet", help="Create the fleet and launch its replicas")
    s_create.add_argument("--image", required=True)
    s_create.add_argument("--size-class", default="medium")
    s_create.add_argument("--zone", action="append", required=True, help="Placement zone (repeat)")
    s_create.add_argument("--desired", type=int, default=6)

    s_cap = sub.add_parser("capacity", help="Set desired capacity (the only way to shrink)")
    s_cap.add_argument("desired", type=int)

    s_upd = sub.add_parser("update", help="Submit a rolling update")
    s_upd.add_argument("--image", required=True)
    s_upd.add_argument("--size-class", default="medium")
    s_upd.add_argument("--zone", action="append", help="Placement zone (repeat); defaults to the fleet's zones")
    s_upd.add_argument("--min-in-service", type=int, default=3)
    s_upd.add_argument("--max-batch-size", type=int, default=3)
    s_upd.add_argument("--health-timeout-s", type=float, default=120.0)
    s_upd.add_argument("--drain-grace-s", type=float, default=30.0)
    s_upd.add_argument("--wait", action="store_true", help="Block until the update finishes")

    for name, text in [
        ("describe", "Describe an update"),
        ("pause", "Pause an update after its current batch"),
        ("resume", "Resume a paused update"),
        ("cancel", "Stop an update at the next batch boundary (no rollback)"),
    ]:
        s = sub.add_parser(name, help=text)
        s.add_argument("update_id")

    s_wait = sub.add_parser("wait", help="Wait for an update to finish")
    s_wait.add_argument("update_id")
    s_wait.add_argument("--interval-s", type=float, default=5.0)
    s_wait.add_argument("--timeout-s", type=float, default=3600.0)

    s_pol = sub.add_parser("policy", help="Show or set the scaling policy")
    s_pol.add_argument("--min", type=int)
    s_pol.add_argument("--max", type=int)
    s_pol.add_argument("--adjustment", type=int)
    s_pol.add_argument("--cooldown-s", type=float)
    s_pol.add_argument("--threshold", type=float)
    s_pol.add_argument("--evaluation-periods", type=int)
    s_pol.add_argument("--period-s", type=float)

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--update-id")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "fleet":
        return _show(requests.get(f"{base}/fleet", timeout=10))

    if args.cmd == "create-fleet":
        payload = _spec_payload(args)
        payload["desired_capacity"] = args.desired
        return _show(requests.post(f"{base}/fleet", json=payload, timeout=60))

    if args.cmd == "capacity":
        return _show(requests.post(f"{base}/fleet/capacity", json={"desired": args.desired}, timeout=600))

    if args.cmd == "update":
        payload = _spec_payload(args)
        payload["policy"] = {
            "min_in_service": args.min_in_service,
            "max_batch_size": args.max_batch_size,
            "health_timeout_s": args.health_timeout_s,
            "drain_grace_s": args.drain_grace_s,
        }
        r = requests.post(f"{base}/updates", json=payload, timeout=30)
        if not r.ok or not args.wait:
            return _show(r)
        return _wait(base, r.json()["id"], interval_s=5.0, timeout_s=3600.0)

    if args.cmd == "describe":
        return _show(requests.get(f"{base}/updates/{args.update_id}", timeout=10))

    if args.cmd in {"pause", "resume", "cancel"}:
        return _show(requests.post(f"{base}/updates/{args.update_id}/{args.cmd}", timeout=10))

    if args.cmd == "wait":
        return _wait(base, args.update_id, interval_s=args.interval_s, timeout_s=args.timeout_s)

    if args.cmd == "policy":
        fields = ["min", "max", "adjustment", "cooldown_s", "threshold", "evaluation_periods", "period_s"]
        changes = {f: getattr(args, f) for f in fields if getattr(args, f) is not None}
        if not changes:
            return _show(requests.get(f"{base}/scaling-policy", timeout=10))
        current = requests.get(f"{base}/scaling-policy", timeout=10)
        if not current.ok:
            return _show(current)
        payload = {**current.json(), **changes}
        return _show(requests.put(f"{base}/scaling-policy", json=payload, timeout=60))

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.update_id:
            params["update_id"] = args.update_id
        return _show(requests.get(f"{base}/events", params=params, timeout=10))

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
