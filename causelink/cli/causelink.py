"""
causelink CLI: run a linkage scan against a URL in a visible browser.

Usage examples:
    causelink scan https://example.test/login
    causelink scan https://example.test/login --headless --output ./history
    causelink schema

During a scan, interact with the page, then call finishScan() in the
browser console to end it and write results.json. With --timeout the
scan also ends after that many seconds.
"""

import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path

from causelink.base.config import CauselinkConfig, get_config, setup_logging
from causelink.contracts.validation import dump_schema
from causelink.errors import CauselinkError, handle_error

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="causelink", description="Input-to-request linkage scanner")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Scan a page and link field access to network requests")
    scan.add_argument("url", help="Page to open")
    scan.add_argument("--output", type=Path, default=None, help="Results directory (default: history)")
    scan.add_argument("--headless", action="store_true", help="Run the browser without a window")
    scan.add_argument("--grace-ms", type=int, default=None, help="How long a cause stays active")
    scan.add_argument("--timeout", type=float, default=None, help="End the scan after N seconds")

    schema = sub.add_parser("schema", help="Print the JSON schema of a result document")
    schema.add_argument("name", nargs="?", default="ScanRun", choices=["ScanRun", "LinkageStats"])
    return parser


def apply_overrides(config: CauselinkConfig, args: argparse.Namespace) -> CauselinkConfig:
    if args.headless:
        config = dataclasses.replace(config, browser=dataclasses.replace(config.browser, headless=True))
    if args.grace_ms is not None:
        config = dataclasses.replace(config, engine=dataclasses.replace(config.engine, grace_delay_ms=args.grace_ms))
    if args.output is not None:
        config = dataclasses.replace(config, storage=dataclasses.replace(config.storage, base_dir=args.output))
    return config


async def run_scan(config: CauselinkConfig, url: str, timeout=None) -> Path:
    # Imported here so `causelink schema` works without a browser installed.
    from causelink.environment.browser import BrowserEnvironment
    from causelink.scanner import LinkageScanner

    environment = BrowserEnvironment(config.browser, config.engine)
    scanner = LinkageScanner(environment, config)
    try:
        await scanner.setup()
        await scanner.run(url)
        logger.info("[CLI] Interact with the page, then call finishScan() in the console")
        try:
            await scanner.wait_for_finish(timeout)
        except asyncio.TimeoutError:
            logger.info(f"[CLI] No finish signal after {timeout}s; ending scan")
        return scanner.save_results()
    finally:
        await scanner.close()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "schema":
        print(dump_schema(args.name))
        return 0

    try:
        config = apply_overrides(get_config(), args)
    except CauselinkError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    setup_logging(config)

    try:
        path = asyncio.run(run_scan(config, args.url, args.timeout))
    except KeyboardInterrupt:
        logger.warning("[CLI] Interrupted before results were written")
        return 130
    except CauselinkError as e:
        logger.error(f"[CLI] Scan failed: {e}")
        return 1
    except Exception as e:
        error = handle_error(e, context=f"Scan of {args.url} failed")
        logger.error(f"[CLI] {error.to_json()}", exc_info=e)
        return 1
    print(f"Results saved to {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
