import logging
from pathlib import Path

def setup_logging(log_path: Path, debug: bool = False) -> logging.Logger:
    """
    Setup logging configuration for mediashift.

    Creates the log file's parent directory and attaches a single file handler.
    Console output is rendered separately by the rich reporter.

    Args:
        log_path: Path to the log file
        debug: If True, enable DEBUG level logging with per-stage timings
    """
    log_file = Path(log_path)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[logging.FileHandler(log_file)],
        force=True  # Override any existing configuration
    )

    # Google and AWS clients are chatty at DEBUG
    for noisy in ("googleapiclient.discovery_cache", "botocore", "boto3", "urllib3", "s3transfer"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")

    return logger
