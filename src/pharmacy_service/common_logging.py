"""
Logging configuration for the pharmacy service
"""
import logging
import sys
from pythonjsonlogger import jsonlogger


def setup_logging(service_name: str, log_level: str = "INFO", log_format: str = "json"):
    """
    Setup structured logging for the service

    Args:
        service_name: Name of the service
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Format (json or text)
    """
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if log_format.lower() == "json":
        formatter = jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
            rename_fields={
                "asctime": "timestamp",
                "name": "logger",
                "levelname": "level"
            },
            static_fields={"service": service_name}
        )
        formatter.default_time_format = "%Y-%m-%dT%H:%M:%S"
        formatter.default_msec_format = "%s.%03dZ"
    else:
        formatter = logging.Formatter(
            fmt=f"%(asctime)s - {service_name} - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # botocore is chatty at INFO
    logging.getLogger("botocore").setLevel(logging.WARNING)

    logging.info(f"Logging initialized for {service_name} at level {log_level}")

    return logger
