from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _env_pairs(pairs: list[str]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise SystemExit(f"--env expects KEY=VALUE, got {pair!r}")
        env[key] = value
    return env


def _policy(args) -> dict | None:
    if args.max_percent is None and args.min_healthy_percent is None:
        return None
    policy = {}
    if args.max_percent is not None:
        policy["max_percent"] = args.max_percent
    if args.min_healthy_percent is not None:
        policy["min_healthy_percent"] = args.min_healthy_percent
    return policy


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rsc", description="Rolling Service Controller CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("services", help="List services")

    s_ev = sub.add_parser("events", help="Show deployment events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--service")

    s_reg = sub.add_parser("register", help="Register a new task definition version")
    s_reg.add_argument("--image", required=True)
    s_reg.add_argument("--port", type=int, required=True)
    s_reg.add_argument("--cpu", type=int, default=256)
    s_reg.add_argument("--memory", type=int, default=512)
    s_reg.add_argument("--env", action="append", default=[], metavar="KEY=VALUE")
    s_reg.add_argument(
        "--health-cmd", required=True, help='Shell command run in the container, or "HTTP /path" for an HTTP probe'
    )
    s_reg.add_argument("--health-interval", type=float, default=30.0)
    s_reg.add_argument("--health-timeout", type=float, default=5.0)
    s_reg.add_argument("--health-retries", type=int, default=3)
    s_reg.add_argument("--health-start-period", type=float, default=0.0)
    s_reg.add_argument("--log-sink")

    s_create = sub.add_parser("create-service", help="Create a service")
    s_create.add_argument("--name")
    s_create.add_argument("--task-definition", type=int, required=True)
    s_create.add_argument("--desired-count", type=int, required=True)
    s_create.add_argument("--max-percent", type=int)
    s_create.add_argument("--min-healthy-percent", type=int)

    s_upd = sub.add_parser("update-service", help="Change version, desired count or rolling policy")
    s_upd.add_argument("service")
    s_upd.add_argument("--task-definition", type=int)
    s_upd.add_argument("--desired-count", type=int)
    s_upd.add_argument("--max-percent", type=int)
    s_upd.add_argument("--min-healthy-percent", type=int)

    s_desc = sub.add_parser("describe", help="Describe a service")
    s_desc.add_argument("service")

    s_scale = sub.add_parser("scaling-policy", help="Attach a target tracking policy")
    s_scale.add_argument("service")
    s_scale.add_argument("--target", type=float, required=True)
    s_scale.add_argument("--min", type=int, required=True)
    s_scale.add_argument("--max", type=int, required=True)
    s_scale.add_argument("--cooldown", type=float, default=60.0)
    s_scale.add_argument("--scale-in-cooldown", type=float)

    s_metric = sub.add_parser("push-metric", help="Report the current load metric for a service")
    s_metric.add_argument("service")
    s_metric.add_argument("value", type=float)

    s_resume = sub.add_parser("resume", help="Resume a stalled rollout")
    s_resume.add_argument("service")

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    base = args.api.rstrip("/")

    if args.cmd == "services":
        _print(requests.get(f"{base}/services", timeout=10).json())
        return 0

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.service:
            params["service_id"] = args.service
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "describe":
        r = requests.get(f"{base}/services/{args.service}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "register":
        if args.health_cmd.startswith("HTTP "):
            command = ["HTTP", args.health_cmd[5:].strip()]
        else:
            command = ["CMD-SHELL", args.health_cmd]
        payload = {
            "image": args.image,
            "port": args.port,
            "cpu": args.cpu,
            "memory": args.memory,
            "environment": _env_pairs(args.env),
            "health_check": {
                "command": command,
                "interval": args.health_interval,
                "timeout": args.health_timeout,
                "retries": args.health_retries,
                "start_period": args.health_start_period,
            },
            "log_sink": args.log_sink,
        }
        r = requests.post(f"{base}/task-definitions", json=payload, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "create-service":
        payload = {
            "name": args.name,
            "task_definition": args.task_definition,
            "desired_count": args.desired_count,
        }
        policy = _policy(args)
        if policy:
            payload["rolling_policy"] = policy
        r = requests.post(f"{base}/services", json=payload, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "update-service":
        payload = {}
        if args.task_definition is not None:
            payload["task_definition"] = args.task_definition
        if args.desired_count is not None:
            payload["desired_count"] = args.desired_count
        policy = _policy(args)
        if policy:
            payload["rolling_policy"] = policy
        r = requests.patch(f"{base}/services/{args.service}", json=payload, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "scaling-policy":
        payload = {
            "target_value": args.target,
            "min_capacity": args.min,
            "max_capacity": args.max,
            "cooldown": args.cooldown,
            "scale_in_cooldown": args.scale_in_cooldown,
        }
        r = requests.put(f"{base}/services/{args.service}/scaling-policy", json=payload, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "push-metric":
        r = requests.post(f"{base}/services/{args.service}/metric", json={"value": args.value}, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "resume":
        r = requests.post(f"{base}/services/{args.service}/resume", timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
