import logging
import logging.config
import os
import re
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/tmp/nonce_dispatch.log")

# Landing service keys travel in the query string
_CREDENTIAL_RE = re.compile(r"((?:api[-_]?key|token)=)[^&\s'\"]+", re.IGNORECASE)


class RedactCredentials(logging.Filter):
    """Mask ``api-key=...`` style query values in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        redacted = _CREDENTIAL_RE.sub(r"\1***", msg)
        if redacted != msg:
            record.msg, record.args = redacted, None
        return True


_HANDLERS = ["console", "file"]


def _quiet(level: str = "WARNING") -> dict:
    return {"level": level, "handlers": _HANDLERS, "propagate": False}


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "redact": {"()": RedactCredentials},
    },
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "filters": ["redact"],
            "stream": sys.stdout,
        },
        "file": {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filters": ["redact"],
            "filename": LOG_FILE,
            "mode": "a",
        },
    },
    "loggers": {
        "nonce_dispatch": {
            "level": LOG_LEVEL,
            "handlers": _HANDLERS,
            "propagate": False,
        },
        # One line per request otherwise
        "httpx": _quiet(),
        "httpcore": _quiet(),
        "uvicorn.access": _quiet(),
    },
    "root": {
        "level": "WARNING",
        "handlers": _HANDLERS,
    },
}

def setup_logging():
    """ Apply the logging configuration. """
    logging.config.dictConfig(LOGGING_CONFIG)
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
