#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


def _ensure_src_on_path() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


def _read_text(path: str) -> str:
    p = Path(path)
    if not p.exists():
        raise SystemExit(f"File not found: {p}")
    return p.read_text(encoding="utf-8", errors="replace")


def _emit(payload: dict, out: str) -> None:
    out_json = json.dumps(payload, indent=2, sort_keys=False)
    if out:
        Path(out).write_text(out_json, encoding="utf-8")
    else:
        print(out_json)


def main(argv: list[str] | None = None) -> int:
    _ensure_src_on_path()

    from portal_order_agent.portal.auth import best_effort_login_failure_reason
    from portal_order_agent.portal.confirmation import extract_confirmation_number

    p = argparse.ArgumentParser(
        prog="parse_portal_text_snapshot",
        description=(
            "Parse saved portal page text (e.g. the body text of a success or login-error page) into JSON.\n"
            "This is intended for debugging parsing regressions offline (no Playwright, no secrets)."
        ),
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    confirmation = sub.add_parser("confirmation", help="Extract the confirmation identifier from a success page")
    confirmation.add_argument("--file", required=True, help="Path to a .txt file with the page's rendered text")
    confirmation.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    login = sub.add_parser("login-error", help="Summarize the portal's login error banner")
    login.add_argument("--file", required=True, help="Path to a .txt file with the login page's rendered text")
    login.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    args = p.parse_args(argv)
    body_text = _read_text(args.file)

    if args.cmd == "confirmation":
        _emit({"confirmation_number": extract_confirmation_number(body_text)}, args.out)
        return 0

    if args.cmd == "login-error":
        _emit({"reason": best_effort_login_failure_reason(body_text)}, args.out)
        return 0

    raise AssertionError("Unhandled command")


if __name__ == "__main__":
    raise SystemExit(main())
