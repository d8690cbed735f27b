import argparse
import json
import time
from pathlib import Path
from typing import Dict, List, Optional

from . import __version__
from .cleanup import cleanup_expired_cache
from .config import DiscoveryConfig, load_config
from .discovery import DiscoveryService, build_service
from .errors import ValidationError
from .flags import CONFIDENCE_DISPLAY_FLAG, FeatureFlagEvaluator
from .logger import get_logger
from .models import UserContext
from .schema import validate_profile_url


def _parse_custom(pairs: Optional[List[str]]) -> Dict[str, str]:
    custom = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise SystemExit(f"Invalid --attr '{pair}'. Use key=value.")
        key, value = pair.split("=", 1)
        custom[key.strip()] = value.strip()
    return custom


def _context(args: argparse.Namespace) -> UserContext:
    return UserContext(
        user_id=getattr(args, "user_id", None),
        email=getattr(args, "email", None),
        custom=_parse_custom(getattr(args, "attr", None)),
    )


def _service(args: argparse.Namespace) -> DiscoveryService:
    return build_service(args.config)


def cmd_discover(args: argparse.Namespace) -> None:
    service = _service(args)
    context = _context(args)
    if args.retry:
        result = service.discover_with_retry(args.company, context)
    else:
        result = service.discover(args.company, context)
    service.limiter.save_state()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return

    if not result.success:
        error = result.error
        print(f"No results for '{result.search_term}': {error.message}")
        if error.retry_after_seconds:
            print(f"Retry after: {error.retry_after_seconds}s")
        raise SystemExit(1)

    show_confidence = service.flags.is_enabled(CONFIDENCE_DISPLAY_FLAG, context)
    source = "cache" if result.cached else "provider"
    print(f"Found {len(result.results)} candidate(s) for '{result.search_term}' ({source}):\n")
    for c in result.results:
        print(f"{c.display_name or '(unknown)'}")
        print(f"  URL: {c.url}")
        if show_confidence:
            low = " (low confidence)" if c.confidence < service.config.confidence_threshold else ""
            print(f"  Confidence: {c.confidence:.2f}{low}")
        if c.description:
            print(f"  {c.description}")
        print()
    if result.auto_selected:
        print(f"Auto-selected: {result.auto_selected.url}")


def cmd_discover_many(args: argparse.Namespace) -> None:
    service = _service(args)
    results = service.discover_many(args.companies, _context(args))
    service.limiter.save_state()

    if args.json:
        print(json.dumps({name: r.to_dict() for name, r in results.items()}, indent=2, default=str))
        return

    for name, result in results.items():
        if not result.success:
            print(f"{name}: {result.error.message}")
        elif result.auto_selected:
            print(f"{name}: {result.auto_selected.url}")
        else:
            print(f"{name}: {len(result.results)} candidate(s)")
    if not all(r.success for r in results.values()):
        raise SystemExit(1)


def cmd_warm_up(args: argparse.Namespace) -> None:
    service = _service(args)
    warmed = service.warm_up(args.companies or None)
    service.limiter.save_state()
    print(f"Cached {warmed} new compan{'y' if warmed == 1 else 'ies'}.")


def cmd_watch(args: argparse.Namespace) -> None:
    service = _service(args)
    interval = args.interval or service.config.health_interval_seconds
    service.monitor.start(interval)
    print(f"Probing health every {interval:.0f}s. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(interval)
            result = service.monitor.last_health
            if result is not None:
                print(f"{result.timestamp.isoformat()} {result.status}")
    except KeyboardInterrupt:
        pass
    finally:
        service.monitor.stop()


def cmd_status(args: argparse.Namespace) -> None:
    service = _service(args)
    status = service.get_rate_limit_status()
    print("Rate limit windows:")
    for w in status["windows"]:
        print(f"  {w['kind']:<11} {w['used']}/{w['limit']} ({w['utilization_pct']}%) resets {w['reset_at']}")
    for warning in service.limiter.get_warning_levels():
        print(f"  [{warning['level'].upper()}] {warning['message']}")

    stats = service.limiter.get_request_stats(args.range)
    print(f"\nRequests ({args.range}): {stats['total_requests']} total, "
          f"{stats['success_rate']}% success, {stats['requests_per_hour']}/h")


def cmd_health(args: argparse.Namespace) -> None:
    service = _service(args)
    result = service.get_health({"healthCheck": True})
    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print(f"Status: {result.status}")
        for name, ok in result.checks.items():
            print(f"  {name:<13} {'ok' if ok else 'FAIL'}")
        for e in result.errors:
            print(f"  - {e}")
    if result.status == "unhealthy":
        raise SystemExit(1)


def cmd_alerts(args: argparse.Namespace) -> None:
    service = _service(args)
    alerts = service.monitor.check_alerts(service.limiter.get_warning_levels())
    if not alerts:
        print("No alerts.")
        return
    for alert in alerts:
        print(f"[{alert['level'].upper()}] {alert['message']}")


def cmd_metrics(args: argparse.Namespace) -> None:
    service = _service(args)
    if args.summary:
        service.monitor.log_summary()
        return
    print(service.monitor.export_metrics())


def _flags(args: argparse.Namespace) -> FeatureFlagEvaluator:
    return FeatureFlagEvaluator.from_config(args.config)


def cmd_flags_list(args: argparse.Namespace) -> None:
    for flag in _flags(args).list_flags():
        state = "on " if flag.enabled else "off"
        group = f" [{flag.experiment_group}]" if flag.experiment_group else ""
        print(f"{state} {flag.rollout_percentage:>3}%  {flag.key}{group}")


def cmd_flags_export(args: argparse.Namespace) -> None:
    document = _flags(args).export_all()
    if args.output:
        Path(args.output).write_text(document, encoding="utf-8")
        print(f"Exported flags to {args.output}")
    else:
        print(document)


def cmd_flags_import(args: argparse.Namespace) -> None:
    input_path = Path(args.input)
    if not input_path.exists():
        raise SystemExit(f"Input file not found: {input_path}")
    if not _flags(args).import_all(input_path.read_text(encoding="utf-8")):
        raise SystemExit("Import rejected; existing flags left unchanged. See log for details.")
    print("Imported flags.")


def cmd_flags_set(args: argparse.Namespace) -> None:
    patch = {}
    if args.enable:
        patch["enabled"] = True
    if args.disable:
        patch["enabled"] = False
    if args.rollout is not None:
        patch["rollout_percentage"] = args.rollout
    if not patch:
        raise SystemExit("Nothing to change. Use --enable, --disable or --rollout.")
    try:
        flag = _flags(args).update(args.key, patch)
    except KeyError:
        raise SystemExit(f"Unknown flag: {args.key}")
    except ValidationError as e:
        raise SystemExit(e.message)
    print(f"{flag.key}: enabled={flag.enabled} rollout={flag.rollout_percentage}%")


def cmd_flags_evaluate(args: argparse.Namespace) -> None:
    evaluation = _flags(args).evaluate(args.key, _context(args))
    print(f"{evaluation.flag_key}: {'enabled' if evaluation.enabled else 'disabled'} ({evaluation.reason})")
    if evaluation.variant:
        print(f"  variant: {evaluation.variant}")
    if "bucket" in evaluation.metadata:
        print(f"  bucket: {evaluation.metadata['bucket']}")


def cmd_validate_url(args: argparse.Namespace) -> None:
    errors = validate_profile_url(args.url)
    if errors:
        print("Invalid:")
        for e in errors:
            print(f" - {e}")
        raise SystemExit(2)
    print("Valid")


def cmd_cleanup(args: argparse.Namespace) -> None:
    service = _service(args)
    removed, remaining = cleanup_expired_cache(service.cache)
    print(f"Removed {removed} expired cache entries; {remaining} remaining.")


def _add_context_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--user-id", help="User id for flag targeting")
    p.add_argument("--email", help="User email for flag targeting")
    p.add_argument("--attr", action="append", help="Custom context attribute key=value (repeatable)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="companylink", description="Company profile discovery CLI")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--env-file", help="Path to .env file (default: ./.env)")

    subparsers = parser.add_subparsers(dest="command")

    dis = subparsers.add_parser("discover", help="Find company profile URLs for a company name")
    dis.add_argument("company", help="Company name")
    dis.add_argument("--retry", action="store_true", help="Retry on provider outages (max 3 attempts)")
    dis.add_argument("--json", action="store_true", help="Print the raw result as JSON")
    _add_context_args(dis)
    dis.set_defaults(func=cmd_discover)

    dm = subparsers.add_parser("discover-many", help="Discover several companies in one run")
    dm.add_argument("companies", nargs="+", help="Company names")
    dm.add_argument("--json", action="store_true", help="Print the raw results as JSON")
    _add_context_args(dm)
    dm.set_defaults(func=cmd_discover_many)

    wu = subparsers.add_parser("warm-up", help="Cache results for common companies ahead of time")
    wu.add_argument("companies", nargs="*", help="Company names (default: COMPANYLINK_WARMUP_COMPANIES)")
    wu.set_defaults(func=cmd_warm_up)

    wch = subparsers.add_parser("watch", help="Run periodic health checks until interrupted")
    wch.add_argument("--interval", type=float, help="Seconds between checks (default: COMPANYLINK_HEALTH_INTERVAL)")
    wch.set_defaults(func=cmd_watch)

    sts = subparsers.add_parser("status", help="Show rate limit usage")
    sts.add_argument("--range", default="24h", choices=["1h", "24h", "7d", "30d"], help="Request stats range")
    sts.set_defaults(func=cmd_status)

    hlt = subparsers.add_parser("health", help="Probe dependencies and report health")
    hlt.add_argument("--json", action="store_true", help="Print the raw result as JSON")
    hlt.set_defaults(func=cmd_health)

    alr = subparsers.add_parser("alerts", help="Show active alerts")
    alr.set_defaults(func=cmd_alerts)

    met = subparsers.add_parser("metrics", help="Export metrics as text lines")
    met.add_argument("--summary", action="store_true", help="Log a human-readable summary instead")
    met.set_defaults(func=cmd_metrics)

    flg = subparsers.add_parser("flags", help="Feature flag administration")
    flag_sub = flg.add_subparsers(dest="flags_command", required=True)

    fl = flag_sub.add_parser("list", help="List flags")
    fl.set_defaults(func=cmd_flags_list)

    fe = flag_sub.add_parser("export", help="Export flags as a JSON array")
    fe.add_argument("--output", help="Write to file instead of stdout")
    fe.set_defaults(func=cmd_flags_export)

    fi = flag_sub.add_parser("import", help="Import flags from a JSON array (all or nothing)")
    fi.add_argument("--input", required=True, help="Path to flag JSON document")
    fi.set_defaults(func=cmd_flags_import)

    fs = flag_sub.add_parser("set", help="Update a flag")
    fs.add_argument("key", help="Flag key")
    toggle = fs.add_mutually_exclusive_group()
    toggle.add_argument("--enable", action="store_true", help="Enable the flag")
    toggle.add_argument("--disable", action="store_true", help="Disable the flag")
    fs.add_argument("--rollout", type=int, help="Rollout percentage 0-100")
    fs.set_defaults(func=cmd_flags_set)

    fv = flag_sub.add_parser("evaluate", help="Evaluate a flag for a context")
    fv.add_argument("key", help="Flag key")
    _add_context_args(fv)
    fv.set_defaults(func=cmd_flags_evaluate)

    vu = subparsers.add_parser("validate-url", help="Validate a manually entered profile URL")
    vu.add_argument("url", help="Profile URL")
    vu.set_defaults(func=cmd_validate_url)

    cln = subparsers.add_parser("cleanup", help="Remove expired cache entries")
    cln.set_defaults(func=cmd_cleanup)

    return parser


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    if not hasattr(args, "func"):
        parser.print_help()
        return

    config: DiscoveryConfig = load_config(Path(args.env_file) if args.env_file else None)
    errors = config.validate()
    if errors:
        for e in errors:
            print(f"Config error: {e}")
        raise SystemExit(2)

    get_logger(level=config.log_level)
    args.config = config
    args.func(args)


if __name__ == "__main__":
    main()
