"""Command-line entry point for the local CA manager."""

import argparse
import logging
import sys

from opentelemetry import trace
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from ca_manager import __version__
from ca_manager.dependencies import check_dependencies
from ca_manager.errors import DependencyMissing, FilesystemPermissionError
from ca_manager.store.pki_store import PKIStore
from shared.config import settings
from shared.logging import setup_logging
from shared.metrics import setup_metrics

logger = logging.getLogger(__name__)


def setup_tracing() -> None:
    resource = Resource.create({"service.name": settings.APP_NAME})
    provider = TracerProvider(resource=resource)

    if settings.OTEL_CONSOLE_EXPORT:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ca-manager",
        description="Manage a local root CA and issue SAN certificates signed by it.",
    )
    parser.add_argument(
        "--base-dir",
        default=None,
        help=f"PKI store directory (default: $PKI_BASE_DIR or ./{settings.PKI_BASE_DIR})",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: $LOG_LEVEL)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(args.log_level)
    setup_tracing()
    setup_metrics(settings.APP_NAME)
    LoggingInstrumentor().instrument()

    # Checked before anything touches the filesystem
    try:
        backend = check_dependencies()
    except DependencyMissing as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 0
    logger.info("ca_manager_started", extra={"backend": backend})

    # Imported only once the crypto backend is known to be present
    from ca_manager.menu import build_menu

    store = PKIStore(args.base_dir or settings.PKI_BASE_DIR)
    try:
        store.ensure_layout()
    except FilesystemPermissionError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1

    menu = build_menu(store)
    try:
        return menu.run()
    except (EOFError, KeyboardInterrupt):
        print("\nAborted.")
        return 0
