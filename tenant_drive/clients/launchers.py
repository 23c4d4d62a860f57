"""Command-line uploader and downloader built on :class:`TransferQueue`.

Examples::

    python -m tenant_drive.clients.launchers upload \\
        --base-url http://localhost:8000 --token "$TOKEN" --bucket <bucket-id> video.mov notes.txt

    python -m tenant_drive.clients.launchers download \\
        --base-url http://localhost:8000 --token "$TOKEN" --bucket <bucket-id> \\
        --key reports/q3.pdf --output ./q3.pdf
"""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional

import requests

from ..config import MIB, ObservabilityConfig, TransferConfig
from ..models import TransferDestination, TransferJob, TransferStatus
from ..telemetry import TelemetryCollector, configure_logging
from .transfer_client import TransferAPIClient
from .transfer_queue import TransferQueue

_LOGGER = logging.getLogger("tenant_drive.clients.launchers")


def _build_http_client():
    return requests.Session()


def build_queue(args: argparse.Namespace, http_client=None) -> TransferQueue:
    config = TransferConfig(
        part_size=args.part_size_mib * MIB,
        multipart_threshold=args.threshold_mib * MIB,
        concurrency=args.concurrency,
        request_timeout=args.timeout,
    )
    client = TransferAPIClient(
        base_url=args.base_url,
        token=args.token,
        timeout=config.request_timeout,
        http_client=http_client or _build_http_client(),
    )
    return TransferQueue(client, config, TelemetryCollector(ObservabilityConfig()))


def run_cli(argv: Optional[Iterable[str]] = None, http_client=None) -> int:
    parser = argparse.ArgumentParser(description="Tenant Drive transfer client")
    sub = parser.add_subparsers(dest="command", required=True)

    def _shared(subparser):
        subparser.add_argument("--base-url", required=True, help="Tenant Drive API endpoint")
        subparser.add_argument(
            "--token",
            default=os.environ.get("TENANT_DRIVE_TOKEN"),
            help="Bearer token (defaults to $TENANT_DRIVE_TOKEN)",
        )
        subparser.add_argument("--bucket", required=True, help="Destination or source bucket id")
        subparser.add_argument("--concurrency", type=int, default=3)
        subparser.add_argument("--part-size-mib", type=int, default=20)
        subparser.add_argument("--threshold-mib", type=int, default=100)
        subparser.add_argument("--timeout", type=float, default=30.0)
        subparser.add_argument("--log-level", default="INFO")

    upload = sub.add_parser("upload", help="Upload one or more local files")
    _shared(upload)
    upload.add_argument("--parent-id", default=None, help="Folder id to upload into")
    upload.add_argument("files", nargs="+", type=Path)
    upload.set_defaults(handler=_run_upload)

    download = sub.add_parser("download", help="Download one object to a local path")
    _shared(download)
    download.add_argument("--key", required=True)
    download.add_argument("--output", type=Path, default=None)
    download.set_defaults(handler=_run_download)

    args = parser.parse_args(list(argv) if argv is not None else None)
    if not args.token:
        parser.error("--token or TENANT_DRIVE_TOKEN is required")
    configure_logging(args.log_level)
    return args.handler(args, build_queue(args, http_client))


def _run_upload(args: argparse.Namespace, queue: TransferQueue) -> int:
    destination = TransferDestination(bucket_id=args.bucket, parent_id=args.parent_id)
    for path in args.files:
        queue.enqueue(path, destination)
    return _report(queue.run_pending())


def _run_download(args: argparse.Namespace, queue: TransferQueue) -> int:
    target = args.output or Path(Path(args.key).name)
    queue.enqueue_download(args.bucket, args.key, target)
    return _report(queue.run_pending())


def _report(jobs: List[TransferJob]) -> int:
    failures = 0
    for job in jobs:
        if job.status == TransferStatus.COMPLETE:
            _LOGGER.info("%s %s: %s (%d bytes)", job.direction.value, job.status.value, job.name, job.total_size)
        else:
            failures += 1
            _LOGGER.error("%s %s: %s (%s)", job.direction.value, job.status.value, job.name, job.error)
    return 1 if failures else 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":  # pragma: no cover
    main()
