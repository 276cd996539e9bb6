import logging
import sys

from opentelemetry._logs import set_logger_provider
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor, ConsoleLogRecordExporter

from .config import settings


def setup_logging(level: str | None = None) -> None:
    """Configure OpenTelemetry logging plus a stderr handler for the operator."""
    level = (level or settings.LOG_LEVEL).upper()

    # 1. Setup OpenTelemetry Logger Provider
    logger_provider = LoggerProvider()

    # Console export would interleave JSON records with the interactive menu
    if settings.OTEL_CONSOLE_EXPORT:
        console_exporter = ConsoleLogRecordExporter()
        logger_provider.add_log_record_processor(BatchLogRecordProcessor(console_exporter))

    set_logger_provider(logger_provider)

    # 2. Attach OTel LoggingHandler to Python's root logger
    handler = LoggingHandler(level=getattr(logging, level), logger_provider=logger_provider)

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # stdout belongs to the menu, so human-readable log lines go to stderr
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(stream_handler)


logger = logging.getLogger("ca_manager")
