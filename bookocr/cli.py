from __future__ import annotations

import argparse
import asyncio
import logging
import subprocess
import sys

import httpx


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="bookocr OCR job orchestration")
    subparsers = parser.add_subparsers(dest="command", required=False)

    api_parser = subparsers.add_parser("api", help="Run the control-plane API and task runner")
    api_parser.add_argument("--host", default=None)
    api_parser.add_argument("--port", type=int, default=None)

    check_parser = subparsers.add_parser("check", help="Ask a running API to look for OCR work now")
    check_parser.add_argument(
        "--api-base-url",
        default=None,
        help="Base URL of the control-plane API (default http://127.0.0.1:<OCR_API_PORT>)",
    )

    serve_parser = subparsers.add_parser("worker-serve", help="Run the worker health + batch endpoint")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None)

    subparsers.add_parser("worker-run", help="OCR every unfinished page, then terminate this instance")

    subparsers.add_parser("create-instance", help="Provision an OCR instance by hand and print its id")
    subparsers.add_parser("user-data", help="Print the cloud-init document used for new instances")

    test_parser = subparsers.add_parser("test", help="Run all tests with pytest")
    test_parser.add_argument(
        "pytest_args",
        nargs=argparse.REMAINDER,
        help="Optional extra pytest args; use `--` before args (e.g. bookocr test -- -k runner)",
    )

    return parser


def _local_base_url(host: str, port: int) -> str:
    if host in {"0.0.0.0", "::", "::0", "[::]"}:
        host = "127.0.0.1"
    return f"http://{host}:{port}"


def run_check(args: argparse.Namespace) -> int:
    from bookocr.core.config import get_settings

    settings = get_settings()
    base_url = args.api_base_url or _local_base_url(settings.api_host, settings.api_port)
    try:
        response = httpx.post(f"{base_url.rstrip('/')}/api/ocr/check", timeout=10.0)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        print(f"Check failed: {exc}", file=sys.stderr)
        return 1
    print(response.text)
    return 0


def run_worker(args: argparse.Namespace) -> int:
    from bookocr.core.config import get_settings
    from bookocr.core.logging_setup import configure_logging
    from bookocr.runtime.cloud import build_self_terminator
    from bookocr.runtime.object_store import build_object_store
    from bookocr.worker.engine import InferenceEngine
    from bookocr.worker.process import WorkerProcess

    settings = get_settings()
    configure_logging(settings)
    worker = WorkerProcess(
        settings,
        build_object_store(settings),
        InferenceEngine(settings),
        build_self_terminator(settings),
    )
    try:
        worker.run()
    except Exception:
        logger.exception("[Worker] aborted; instance left running for inspection")
        raise
    return 0


async def _create_instance() -> str:
    from bookocr.core.config import get_settings
    from bookocr.runtime.cloud import build_cloud_provider
    from bookocr.runtime.cloud_init import build_user_data

    settings = get_settings()
    provider = build_cloud_provider(settings)
    try:
        info = await provider.create_instance(label=settings.instance_label, user_data=build_user_data(settings))
    finally:
        await provider.close()
    return info.id


def run_tests(args: argparse.Namespace) -> int:
    cmd = [sys.executable, "-m", "pytest"]
    if args.pytest_args:
        cmd.extend(args.pytest_args)
    print("Running:", " ".join(cmd))
    return subprocess.call(cmd)


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "api":
        import uvicorn

        from bookocr.app.api import create_app
        from bookocr.core.config import get_settings
        from bookocr.core.logging_setup import configure_logging

        settings = get_settings()
        configure_logging(settings)
        host = args.host or settings.api_host
        port = args.port or settings.api_port
        uvicorn.run(create_app(settings), host=host, port=port, log_level="info")
        return

    if args.command == "worker-serve":
        import uvicorn

        from bookocr.core.config import get_settings
        from bookocr.core.logging_setup import configure_logging
        from bookocr.worker.engine import InferenceEngine
        from bookocr.worker.server import build_worker_app

        settings = get_settings()
        configure_logging(settings)
        port = args.port or settings.worker_port
        uvicorn.run(build_worker_app(settings, InferenceEngine(settings)), host=args.host, port=port, log_level="info")
        return

    if args.command == "worker-run":
        raise SystemExit(run_worker(args))

    if args.command == "check":
        raise SystemExit(run_check(args))

    if args.command == "create-instance":
        print(asyncio.run(_create_instance()))
        return

    if args.command == "user-data":
        from bookocr.core.config import get_settings
        from bookocr.runtime.cloud_init import build_user_data

        print(build_user_data(get_settings()))
        return

    if args.command == "test":
        raise SystemExit(run_tests(args))

    parser.print_help()


if __name__ == "__main__":
    main()
