import argparse
import json
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"
TERMINAL_STATUSES = {"completed", "failed"}


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _load_requirements(value: str) -> Dict[str, Any]:
    """Accept inline JSON or @path/to/file.json."""
    text = Path(value[1:]).read_text() if value.startswith("@") else value
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("requirements must be a JSON object")
    return data


def _error_text(resp: httpx.Response) -> str:
    try:
        error = resp.json().get("error") or {}
    except ValueError:
        return resp.text[:200]
    return f"{error.get('code', 'ERROR')}: {error.get('message', '')}"


def _print_status(status: dict) -> None:
    if not status:
        print("No status available.")
        return
    print(f"{status.get('requestId')}: {status.get('status')}")
    for entry in status.get("processingLog") or []:
        print(f"- {entry.get('agent')}: {entry.get('status')}")
    error = status.get("errorDetails")
    if error:
        print(f"Error: {error.get('code')} {error.get('message')}")
    if status.get("itineraryId"):
        print(f"Itinerary: {status['itineraryId']}")


def _poll_status(client: httpx.Client, base: str, request_id: str, timeout_s: int = 120) -> int:
    start = time.time()
    while time.time() - start < timeout_s:
        resp = client.get(_join_url(base, f"/itineraries/{request_id}/status"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch status: HTTP {resp.status_code} {_error_text(resp)}")
            return 1
        status = resp.json().get("data") or {}
        if status.get("status") in TERMINAL_STATUSES:
            _print_status(status)
            return 0 if status.get("status") == "completed" else 2
        time.sleep(2)
    print("Timed out waiting for the pipeline to finish.")
    return 1


def run_submit(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    try:
        requirements = _load_requirements(args.requirements)
    except (OSError, ValueError) as exc:
        print(f"Invalid requirements: {exc}")
        return 1
    with httpx.Client() as client:
        resp = client.post(
            _join_url(base, "/itineraries/requests"),
            json={"userId": args.user, "requirements": requirements},
            timeout=10,
        )
        if resp.status_code >= 400:
            print(f"Failed to create request: HTTP {resp.status_code} {_error_text(resp)}")
            return 1
        request_id = resp.json()["data"]["id"]
        print(f"Created request {request_id}")
        if args.no_process:
            return 0
        resp = client.post(
            _join_url(base, "/itineraries/process-request"),
            json={"itineraryRequestId": request_id},
            timeout=args.timeout,
        )
        if resp.status_code >= 400:
            print(f"Processing failed: HTTP {resp.status_code} {_error_text(resp)}")
        if args.wait or resp.status_code >= 400:
            return _poll_status(client, base, request_id, timeout_s=args.timeout)
    return 0


def run_status(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        if args.wait:
            return _poll_status(client, base, args.request_id, timeout_s=args.timeout)
        resp = client.get(_join_url(base, f"/itineraries/{args.request_id}/status"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch status: HTTP {resp.status_code} {_error_text(resp)}")
            return 1
        _print_status(resp.json().get("data") or {})
    return 0


def run_check_timeout(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    token = args.token or os.getenv("INTERNAL_API_KEY", "")
    with httpx.Client() as client:
        resp = client.post(
            _join_url(base, f"/internal/timeouts/{args.request_id}/check"),
            headers={"X-Internal-Token": token},
            timeout=10,
        )
        if resp.status_code >= 400:
            print(f"Timeout check failed: HTTP {resp.status_code} {_error_text(resp)}")
            return 1
        data = resp.json().get("data") or {}
    print("Timed out; request failed." if data.get("timedOut") else "Within budget (or no timeout record).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Itinerary pipeline CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    submit = subparsers.add_parser("submit", help="Create a request and start processing")
    submit.add_argument("--user", required=True, help="User id")
    submit.add_argument("--requirements", required=True, help="Requirements JSON, or @file.json")
    submit.add_argument("--no-process", action="store_true", help="Only create the request")
    submit.add_argument("--wait", action="store_true", help="Poll until the pipeline finishes")
    submit.add_argument("--timeout", type=int, default=120, help="Max wait seconds")

    status = subparsers.add_parser("status", help="Show request status")
    status.add_argument("request_id")
    status.add_argument("--wait", action="store_true", help="Poll until the pipeline finishes")
    status.add_argument("--timeout", type=int, default=120, help="Max wait seconds")

    check = subparsers.add_parser("check-timeout", help="Run the timeout monitor for one request")
    check.add_argument("request_id")
    check.add_argument("--token", help="Internal API key (defaults to $INTERNAL_API_KEY)")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "submit":
        return run_submit(args)
    if args.command == "status":
        return run_status(args)
    if args.command == "check-timeout":
        return run_check_timeout(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
