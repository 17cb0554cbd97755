import json
import logging

LOGGER_NAME = 'marketplace'


def configure_logging(level: str = 'INFO') -> None:
    """Idempotent logging setup for app-factory flow."""
    root = logging.getLogger()
    if root.handlers:
        return
    numeric_level = getattr(logging, str(level or 'INFO').upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
    )


def get_logger(suffix=''):
    name = f"{LOGGER_NAME}.{suffix}" if suffix else LOGGER_NAME
    return logging.getLogger(name)


def log_event(logger, level, event, **fields):
    """Emit one JSON object per line so log drains can index the fields."""
    payload = {'event': event}
    for key, value in fields.items():
        payload[str(key)] = value
    logger.log(level, json.dumps(payload, ensure_ascii=True, default=str))
