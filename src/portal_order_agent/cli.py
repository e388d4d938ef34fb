from __future__ import annotations

import argparse
import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

import yaml
from dotenv import load_dotenv

from .config import AppConfig, load_config
from .eligibility import HttpEligibilityOracle
from .engine import OrderEngine
from .logging_config import configure_logging
from .models import OrderOutcome, OrderRequest, OrderStatus, utcnow
from .portal.audit import AuditRecorder
from .portal.confirmation import extract_confirmation_number
from .portals import KNOWN_PORTALS
from .state import DuplicateOrder, StateStore
from .util.dates import parse_us_date


logger = logging.getLogger("portal_order_agent")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="portal_order_agent")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    enqueue = sub.add_parser("enqueue", help="Queue an order from a YAML/JSON file")
    enqueue.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    enqueue.add_argument("--order", required=True, help="Path to the order file")

    run = sub.add_parser("run", help="Process queued orders one at a time")
    run.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    run.add_argument("--portal", default="", help="Only process orders for this portal")
    run.add_argument("--headful", action="store_true", help="Run browser headful (debug)")
    run.add_argument("--slowmo-ms", type=int, default=0, help="Playwright slow motion in milliseconds (debug).")
    run.add_argument(
        "--no-preview",
        action="store_true",
        help="Submit without stopping for operator approval (overrides engine.preview_mode).",
    )
    run.add_argument(
        "--fresh-session",
        action="store_true",
        help="Do not reuse stored portal sessions. Helpful for weird redirects.",
    )

    list_orders = sub.add_parser("list-orders", help="Show queued and finished orders")
    list_orders.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    list_orders.add_argument("--status", default="", choices=[""] + [s.value for s in OrderStatus], help="Filter by status")

    sub.add_parser("list-portals", help="List the built-in portal profiles (other portals can be configured)")

    preflight = sub.add_parser(
        "preflight",
        help="Validate configuration and external dependencies (eligibility oracle). Does not run Playwright.",
    )
    preflight.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    preflight.add_argument("--skip-oracle", action="store_true", help="Skip the eligibility oracle reachability check")

    purge = sub.add_parser("purge-audit", help="Delete audit screenshots older than the retention window")
    purge.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    purge.add_argument("--days", type=int, default=0, help="Override audit.retention_days")

    export = sub.add_parser("export-audit", help="Zip one order's audit screenshots and the log file")
    export.add_argument("order_id", help="Correlation id of the order")
    export.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    export.add_argument("--out-dir", default="data", help="Where to write the zip (default: data)")

    extract = sub.add_parser(
        "extract-confirmation",
        help="Read the confirmation identifier from a saved success-page text (offline, no Playwright)",
    )
    extract.add_argument("--file", required=True, help="Path to the saved page text")

    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    if args.cmd == "list-portals":
        # Print only; no config/env required.
        for k in sorted(KNOWN_PORTALS.keys()):
            info = KNOWN_PORTALS[k]
            print(f"{info.name}\t{info.display_name}\t{info.base_url}")
        return 0

    if args.cmd == "extract-confirmation":
        p = Path(args.file)
        if not p.exists():
            raise SystemExit(f"File not found: {p}")
        number = extract_confirmation_number(p.read_text(encoding="utf-8", errors="replace"))
        if not number:
            logger.error("No confirmation identifier found in %s", p)
            return 1
        print(number)
        return 0

    cfg = _load(args.config)

    if args.cmd == "preflight":
        logger.info("Starting preflight checks")
        _preflight_portals(cfg)
        if not args.skip_oracle:
            _preflight_oracle(cfg)
        logger.info("Preflight OK")
        return 0

    state = StateStore(cfg.state.db_path)
    try:
        if args.cmd == "enqueue":
            order = load_order_file(args.order)
            cfg.get_portal(order.portal)  # fail fast on unknown portals
            try:
                state.enqueue_order(order)
            except DuplicateOrder as e:
                raise SystemExit(str(e)) from e
            logger.info("Queued order %s for %s", order.correlation_id, order.portal)
            return 0

        if args.cmd == "list-orders":
            status = OrderStatus(args.status) if args.status else None
            for o in state.list_orders(status):
                print(
                    f"{o.correlation_id}\t{o.portal}\t{o.status.value}\t{o.attempts}\t"
                    f"{o.confirmation_number or '-'}\t{o.error or ''}"
                )
            return 0

        if args.cmd == "purge-audit":
            days = args.days or cfg.audit.retention_days
            cutoff = utcnow() - timedelta(days=days)
            removed = AuditRecorder(cfg.audit.dir, state).purge_older_than(cutoff)
            logger.info("Purged %d audit entries older than %d days", removed, days)
            return 0

        if args.cmd == "export-audit":
            if state.get_order(args.order_id) is None:
                raise SystemExit(f"Unknown order: {args.order_id}")
            bundle = AuditRecorder(cfg.audit.dir, state).export(
                args.order_id,
                out_dir=args.out_dir,
                log_file=cfg.logging.file_path,
            )
            logger.info("Wrote audit bundle: %s", bundle)
            return 0

        if args.cmd == "run":
            return _run(cfg, state, args)
    finally:
        state.close()

    raise AssertionError("Unhandled command")


def _load(config_path: str) -> AppConfig:
    cfg = load_config(config_path)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path, secrets=cfg.secrets())
    return cfg


def load_order_file(path: str) -> OrderRequest:
    """
    Read an order from YAML or JSON. Dates may be written the way clinics write them (12/26/1985).
    """
    p = Path(path)
    if not p.exists():
        raise SystemExit(f"File not found: {p}")
    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise SystemExit(f"Order file must contain a mapping: {p}")

    patient = raw.get("patient")
    if isinstance(patient, dict) and isinstance(patient.get("date_of_birth"), str):
        patient["date_of_birth"] = parse_us_date(patient["date_of_birth"])
    if isinstance(raw.get("collection_date"), str) and raw["collection_date"].strip():
        raw["collection_date"] = parse_us_date(raw["collection_date"])
    # Allow bare test codes: tests: [ "005009", "322000" ]
    if isinstance(raw.get("tests"), list):
        raw["tests"] = [{"code": str(t)} if not isinstance(t, dict) else t for t in raw["tests"]]
    return OrderRequest.model_validate(raw)


def _run(cfg: AppConfig, state: StateStore, args: argparse.Namespace) -> int:
    if args.headful:
        cfg.engine.headless = False
    if args.slowmo_ms:
        cfg.engine.slow_mo_ms = args.slowmo_ms
    if args.no_preview:
        cfg.engine.preview_mode = False

    logger.info("Starting run (preview_mode=%s)", cfg.engine.preview_mode)
    run_id = state.record_run_start()
    try:
        engine = OrderEngine(cfg, state)
        if args.fresh_session:
            for name in cfg.portals:
                engine.sessions.invalidate(name)

        outcomes = engine.process_pending(portal=args.portal or None, on_preview=_ask_operator)
        for o in outcomes:
            logger.info(
                "Order %s: %s%s",
                o.correlation_id,
                o.status.value,
                f" (confirmation {o.confirmation_number})" if o.confirmation_number else "",
            )

        failed = [o for o in outcomes if o.status in (OrderStatus.FAILED, OrderStatus.NEEDS_MANUAL_REVIEW)]
        state.record_run_finish(run_id, ok=not failed, message=f"{len(outcomes)} processed, {len(failed)} escalated")
        return 1 if failed else 0
    except Exception as e:
        state.record_run_finish(run_id, ok=False, message=str(e))
        raise


def _ask_operator(outcome: OrderOutcome) -> bool:
    print()
    print(f"Order {outcome.correlation_id} is filled and validated.")
    if outcome.last_screenshot:
        print(f"Preview screenshot: {outcome.last_screenshot}")
    if outcome.verification is not None:
        print(f"Eligibility: {outcome.verification.value}")
    try:
        answer = input("Submit this order? [y/N] ")
    except EOFError:
        answer = ""
    return answer.strip().lower() in {"y", "yes"}


def _preflight_portals(cfg: AppConfig) -> None:
    if not cfg.portals:
        raise RuntimeError("No portals configured.")
    for name, portal in sorted(cfg.portals.items()):
        if portal.has_credentials:
            logger.info("Portal %s: credentials present (user=%r, base_url=%s)", name, portal.username, portal.base_url)
        else:
            logger.warning("Portal %s: no credentials configured; orders for it will escalate.", name)


def _preflight_oracle(cfg: AppConfig) -> None:
    if not cfg.eligibility.enabled:
        logger.info("Eligibility oracle not configured; demographics will pass through unverified.")
        return
    oracle = HttpEligibilityOracle(
        cfg.eligibility.endpoint,
        api_key=cfg.eligibility.api_key,
        timeout_seconds=cfg.eligibility.timeout_seconds,
    )
    if not oracle.ping():
        raise RuntimeError(f"Eligibility oracle preflight failed: {cfg.eligibility.endpoint} is unreachable.")
    logger.info("Eligibility oracle preflight OK (%s)", cfg.eligibility.endpoint)
