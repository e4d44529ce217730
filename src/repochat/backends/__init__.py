"""Pick the configured answer provider."""

import logging

from ..config import get_provider_url
from ..provider import AnswerProvider
from .http import HttpAnswerProvider

logger = logging.getLogger(__name__)


def get_answer_provider() -> AnswerProvider | None:
    """Return the configured provider, or None if there isn't one."""
    url = get_provider_url()
    if not url:
        logger.warning("REPOCHAT_PROVIDER_URL is not set; /chat is disabled")
        return None
    return HttpAnswerProvider(url=url)
