import argparse
import json
import sys
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_result(result: dict) -> None:
    if result.get("cancelled"):
        print("Cancelled.")
    elif result.get("error"):
        print(f"Issue: {result.get('summary') or result['error']}")
    else:
        print(result.get("response") or result.get("summary") or "Done.")
    for call in result.get("tool_calls") or []:
        outcome = call.get("result") or {}
        mark = "x" if outcome.get("error") else "-"
        print(f"  {mark} {call.get('name')} {json.dumps(call.get('args') or {})}")


def run_command(args: argparse.Namespace) -> int:
    text = " ".join(args.text).strip()
    if not text:
        print("Nothing to run.")
        return 2
    payload = {"text": text, "source": args.source, "wait": not args.no_wait}
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/commands"), json=payload, timeout=args.timeout)
        if resp.status_code >= 400:
            print(f"Failed to submit command: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    if args.no_wait:
        position = data.get("queue_position", 0)
        where = "running" if not position else f"queued at position {position}"
        print(f"{data.get('command_id')} {where}")
        return 0
    if args.json:
        print(json.dumps(data, indent=2))
    else:
        _print_result(data)
    return 1 if data.get("error") and not data.get("cancelled") else 0


def run_cancel(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/commands/cancel"), timeout=10)
    if resp.status_code == 409:
        print("No command is running.")
        return 1
    resp.raise_for_status()
    print(f"Cancel requested for {resp.json().get('command_id')}.")
    return 0


def run_status(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/status"), timeout=10)
        resp.raise_for_status()
        status = resp.json()
    if args.json:
        print(json.dumps(status, indent=2))
        return 0
    current = status.get("current_command")
    print(f"Status: {status.get('status')} (queue: {status.get('queue_length', 0)}, observers: {status.get('observers', 0)})")
    if current:
        print(f"Running: {current.get('text')} [{len(current.get('tool_calls') or [])} tool calls]")
    for model in status.get("models") or []:
        print(f"  {model.get('model')}: {model.get('remaining')} calls left")
    return 0


def run_history(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        if args.clear:
            resp = client.delete(_join_url(args.base_url, "/api/history"), timeout=10)
            resp.raise_for_status()
            print("History cleared.")
            return 0
        resp = client.get(_join_url(args.base_url, "/api/history"), params={"limit": args.limit}, timeout=10)
        resp.raise_for_status()
        entries = resp.json().get("entries") or []
    if not entries:
        print("No history.")
    for entry in entries:
        print(f"{entry.get('id')}  {entry.get('command')}  ->  {entry.get('summary')}")
    return 0


def run_confirm(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        if not args.confirm_id:
            resp = client.get(_join_url(args.base_url, "/api/confirmations"), timeout=10)
            resp.raise_for_status()
            pending = resp.json().get("confirmations") or []
            if not pending:
                print("No pending confirmations.")
            for item in pending:
                print(f"{item['confirm_id']}  {item['tool_name']} {json.dumps(item.get('args') or {})}")
            return 0
        payload = {"confirm_id": args.confirm_id, "approved": args.decision == "approve"}
        resp = client.post(_join_url(args.base_url, "/api/confirm"), json=payload, timeout=10)
    if resp.status_code == 404:
        print("Confirmation not found or already resolved.")
        return 1
    resp.raise_for_status()
    print("Approved." if payload["approved"] else "Denied.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="TabPilot CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Submit a command")
    run.add_argument("text", nargs="+", help="Command text")
    run.add_argument("--source", choices=["interactive", "voice", "external"], default="external")
    run.add_argument("--no-wait", action="store_true", help="Return as soon as the command is admitted")
    run.add_argument("--timeout", type=float, default=600, help="Max wait seconds")
    run.add_argument("--json", action="store_true", help="Print the raw result")
    run.set_defaults(func=run_command)

    cancel = subparsers.add_parser("cancel", help="Cancel the running command")
    cancel.set_defaults(func=run_cancel)

    status = subparsers.add_parser("status", help="Show orchestrator status")
    status.add_argument("--json", action="store_true")
    status.set_defaults(func=run_status)

    history = subparsers.add_parser("history", help="Show or clear the action log")
    history.add_argument("--limit", type=int, default=20)
    history.add_argument("--clear", action="store_true")
    history.set_defaults(func=run_history)

    confirm = subparsers.add_parser("confirm", help="List or answer pending confirmations")
    confirm.add_argument("confirm_id", nargs="?")
    confirm.add_argument("decision", nargs="?", choices=["approve", "deny"], default="deny")
    confirm.set_defaults(func=run_confirm)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1
    try:
        return args.func(args)
    except httpx.HTTPError as exc:
        print(f"Request failed: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
