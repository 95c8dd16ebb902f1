import logging
import sys
import traceback

from fastapi import Request

from mvckit.config import Settings

logger = logging.getLogger("mvckit")


class _LevelPrefixFormatter(logging.Formatter):
    def format(self, record):
        record.levelprefix = "INFO" if record.levelno < logging.WARNING else record.levelname
        return super().format(record)


def configure_logging(settings: Settings):
    """
    Send toolkit logs to stdout as ``INFO\\t<date> <time> <message>``.

    INFO messages are only emitted with ``enable_info_log``; warnings and
    errors always are.
    """
    if not any(getattr(h, "_mvckit", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(_LevelPrefixFormatter("%(levelprefix)s\t%(asctime)s %(message)s", "%Y/%m/%d %H:%M:%S"))
        handler._mvckit = True
        logger.addHandler(handler)
    logger.setLevel(logging.INFO if settings.enable_info_log else logging.WARNING)


def server_error(exc: BaseException, settings: Settings) -> str:
    """Log an unexpected error and return the text for the 500 response."""
    if settings.show_stack_on_error:
        text = f"{exc}\n{''.join(traceback.format_exception(exc))}"
    else:
        text = f"{exc}\n"
    logger.error(text)
    return text if settings.show_stack_on_error else "Internal Server Error"


def get_client_ip(request: Request) -> str:
    """
    Best guess of the client address.

    X-Forwarded-For (first hop) wins when behind a proxy, then X-Real-IP,
    then the socket peer.
    """
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip

    if request.client is not None:
        return request.client.host
    return ""
