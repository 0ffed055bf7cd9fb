from __future__ import annotations

import argparse
import asyncio
import base64
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from solders.transaction import VersionedTransaction

from bundle_racer.common import log_event
from bundle_racer.runtime import SubmissionSettings, setup_logger
from bundle_racer.storage import ThrottleSettings, build_throttle_store
from bundle_racer.submission import BundleSubmitter


def load_bundle_file(path: str) -> list[VersionedTransaction]:
    """Read a JSON list of base64 serialized, already-signed transactions."""
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("transactions")
    if not isinstance(payload, list):
        raise ValueError(f"{path} must contain a JSON list of base64 transactions")
    return [VersionedTransaction.from_bytes(base64.b64decode(str(item))) for item in payload]


async def run_submit(
    *,
    logger: logging.Logger,
    submitter: BundleSubmitter,
    bundle_file: str,
    wait_background: bool,
) -> int:
    transactions = load_bundle_file(bundle_file)
    result = await submitter.submit(transactions)
    if result is None:
        print(json.dumps({"signature": None, "status": "invalid"}))
        return 1

    print(
        json.dumps(
            {
                "signature": result.signature,
                "status": result.status,
                "bundle_id": result.bundle_id,
            }
        )
    )
    if not wait_background and result.background is not None:
        result.stop_retries()
        log_event(
            logger,
            level="info",
            event="bundle_background_stopped",
            message="Stopping background retries before exit",
            signature=result.signature,
        )
    return 0


async def run_simulate(*, submitter: BundleSubmitter, bundle_file: str) -> int:
    transactions = load_bundle_file(bundle_file)
    result = await submitter.simulate(transactions)
    print(json.dumps(result, ensure_ascii=False, default=str))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Race a signed bundle across block-engine endpoints.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    submit = subparsers.add_parser("submit", help="Submit a bundle to every configured endpoint")
    submit.add_argument("--bundle-file", required=True)
    submit.add_argument(
        "--no-wait-background",
        action="store_true",
        help="Stop outstanding retries instead of waiting for them before exit",
    )

    simulate = subparsers.add_parser("simulate", help="Simulate a bundle on the first endpoint")
    simulate.add_argument("--bundle-file", required=True)

    subparsers.add_parser("cooldown", help="Print the remaining submission cooldown in seconds")
    return parser


async def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logger = setup_logger()
    throttle = build_throttle_store(ThrottleSettings.from_env(), logger)

    try:
        if args.command == "cooldown":
            print(json.dumps({"remaining_seconds": round(await throttle.remaining(), 3)}))
            return 0

        submitter = BundleSubmitter(
            logger=logger,
            settings=SubmissionSettings.from_env(),
            throttle=throttle,
        )
        async with submitter:
            if args.command == "simulate":
                return await run_simulate(submitter=submitter, bundle_file=args.bundle_file)
            return await run_submit(
                logger=logger,
                submitter=submitter,
                bundle_file=args.bundle_file,
                wait_background=not args.no_wait_background,
            )
    except Exception as error:
        logger.exception(
            "Command failed",
            extra={"event": "command_failed", "command": args.command, "error": str(error)},
        )
        return 1
    finally:
        await throttle.close()


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
