"""
Logging Configuration
Sets up the 'noisemap' logger for a run, in the driver and in cell workers.
"""
import logging
import sys
from typing import Optional, Union

# Cells run in pool workers, so each record names its process
LOG_FORMAT = '%(asctime)s - %(processName)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%H:%M:%S'

# Third party loggers that flood DEBUG output during numba compilation
NOISY_LOGGERS = ("numba", "matplotlib")


def resolve_level(level: Union[int, str]) -> int:
    """Accept logging constants or their names ('debug', 'INFO', ...)."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown logging level: {level}")
    return value


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = None,
    *,
    append: bool = False,
) -> logging.Logger:
    """
    Configures the logger of the 'noisemap' namespace.

    Handlers installed by a previous call are replaced, handlers added by the
    host application are left alone. Python warnings (numba, shapely) are
    routed through logging.

    Args:
        level: Logging level, as a constant or its name
        log_file: Optional path to also save logs to a file.
        append: Append to ``log_file`` instead of truncating it.
    """
    level = resolve_level(level)
    logger = logging.getLogger("noisemap")
    logger.setLevel(level)
    for handler in [h for h in logger.handlers if getattr(h, "_noisemap", False)]:
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='a' if append else 'w', encoding='utf-8'))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler._noisemap = True
        logger.addHandler(handler)

    logging.captureWarnings(True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logger.debug("Logging initialized at %s.", logging.getLevelName(level))
    return logger
