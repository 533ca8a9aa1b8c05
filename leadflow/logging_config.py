"""
Structured logging for LeadFlow.

Everything logs through structlog with snake_case event names. Work done on
behalf of one customer (a conversation turn, a follow-up, an operator action)
runs inside `conversation_context`, so every event it logs, including events
from background tasks it spawns, carries the phone number and conversation id
without passing them by hand.
"""

import logging
import re
import sys
from contextlib import contextmanager
from typing import Any, Optional

import structlog

from leadflow.config import config

# Client libraries that log every HTTP request at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "openai", "google_genai", "googleapiclient", "twilio", "urllib3")

_DIGITS_RE = re.compile(r"\d")


def mask_phone(phone: str) -> str:
    """Keep the country/area prefix and the last four digits: 5511*****9999."""
    digits = _DIGITS_RE.findall(phone or "")
    if len(digits) <= 8:
        return phone
    return "".join(digits[:4]) + "*" * (len(digits) - 8) + "".join(digits[-4:])


def _mask_phone_numbers(logger, method_name, event_dict):
    """Production logs never carry a full customer number."""
    for key in ("phone", "recipient", "to"):
        value = event_dict.get(key)
        if isinstance(value, str):
            event_dict[key] = mask_phone(value)
    return event_dict


def configure_logging(debug: bool = config.DEBUG, level: str = config.LOG_LEVEL) -> None:
    """
    Console output with full numbers when `debug`, masked JSON lines otherwise.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if debug:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(_mask_phone_numbers)
        processors.append(structlog.processors.JSONRenderer(ensure_ascii=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextmanager
def conversation_context(phone: str, conversation_id: Optional[int] = None, **extra):
    """
    Bind `phone` (and the conversation id, when known) to every event logged
    in this block and in tasks created from it.

        with conversation_context("5511999999999"):
            logger.info("processing_incoming_message", length=12)
    """
    values = {"phone": phone, **extra}
    if conversation_id is not None:
        values["conversation_id"] = conversation_id
    with structlog.contextvars.bound_contextvars(**values):
        yield


def get_logger(name: str = None) -> Any:
    """
    Usage:
        logger = get_logger(__name__)
        logger.info("message_queued", recipient="5511999999999", queue_size=3)
    """
    return structlog.get_logger(name)


configure_logging()

logger = get_logger("leadflow")
