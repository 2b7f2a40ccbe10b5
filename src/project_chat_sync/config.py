"""Runtime settings for the chat synchronization engine."""

import logging
import os
from typing import Optional

import structlog
from pydantic import BaseModel

logger = structlog.get_logger()


class SyncSettings(BaseModel):
    """Tunables shared by every conversation engine."""

    api_base_url: str = "http://localhost:8080/api/v1"
    ws_url: str = "ws://localhost:8080/api/v1/messages/ws"
    # Identity of the signed-in user; authentication itself happens elsewhere.
    user_id: str = ""
    api_token: Optional[str] = None
    poll_interval_seconds: float = 10.0
    dedup_tolerance_seconds: float = 5.0
    # None keeps the baseline behaviour: a hung send stays pending forever.
    send_timeout_seconds: Optional[float] = 30.0
    max_content_length: int = 4000
    banner_failure_threshold: int = 3
    history_page_size: int = 100
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """Build settings from ``CHAT_*`` environment variables."""
        defaults = cls()
        timeout = float(os.getenv("CHAT_SEND_TIMEOUT_SECONDS", defaults.send_timeout_seconds))
        return cls(
            api_base_url=os.getenv("CHAT_API_BASE_URL", defaults.api_base_url),
            ws_url=os.getenv("CHAT_WS_URL", defaults.ws_url),
            user_id=os.getenv("CHAT_USER_ID", defaults.user_id),
            api_token=os.getenv("CHAT_API_TOKEN") or None,
            poll_interval_seconds=float(
                os.getenv("CHAT_POLL_INTERVAL_SECONDS", defaults.poll_interval_seconds)
            ),
            dedup_tolerance_seconds=float(
                os.getenv("CHAT_DEDUP_TOLERANCE_SECONDS", defaults.dedup_tolerance_seconds)
            ),
            send_timeout_seconds=timeout if timeout > 0 else None,
            max_content_length=int(
                os.getenv("CHAT_MAX_CONTENT_LENGTH", defaults.max_content_length)
            ),
            banner_failure_threshold=int(
                os.getenv("CHAT_BANNER_FAILURE_THRESHOLD", defaults.banner_failure_threshold)
            ),
            history_page_size=int(os.getenv("CHAT_HISTORY_PAGE_SIZE", defaults.history_page_size)),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        )


def configure_logging(level: str = "INFO") -> None:
    """Route structlog output through a level filter."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(numeric))
    logger.info("logging_configured", level=level.upper())
