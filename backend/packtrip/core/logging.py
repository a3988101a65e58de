import logging
import re

import structlog

from packtrip.core.settings import Settings

_SECRET_KEYS = {"signature_key", "server_key", "authorization", "token", "fcm_token", "snap_token"}
_BEARER = re.compile(r'(Bearer\s+)[A-Za-z0-9\-_\.=]+')
_MIDTRANS_KEY = re.compile(r'(SB-)?Mid-server-[A-Za-z0-9\-_]+')


# Redaction processor to scrub gateway keys and tokens from any value in the event dict
def redact_secrets(logger, method_name, event_dict):

    def scrub(key, v):
        if isinstance(key, str) and key.lower() in _SECRET_KEYS and v:
            return "REDACTED"
        if isinstance(v, str):
            v = _BEARER.sub(r'\1REDACTED', v)
            v = _MIDTRANS_KEY.sub('REDACTED', v)
            return v
        if isinstance(v, list):
            return [scrub(None, x) for x in v]
        if isinstance(v, dict):
            return {k: scrub(k, vv) for k, vv in v.items()}
        return v

    for k, v in list(event_dict.items()):
        event_dict[k] = scrub(k, v)
    return event_dict


def configure_logging(settings: Settings) -> None:
    """Structured JSON logging through structlog, rendered by the stdlib handlers"""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers = [logging.StreamHandler()]
    if settings.LOG_FILE:
        handlers.append(logging.FileHandler(settings.LOG_FILE))

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format='%(message)s',  # structlog handles formatting
        handlers=handlers,
    )
