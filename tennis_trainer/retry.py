"""
Exponential backoff for outbound vendor calls (Whisper, Claude).
"""
import logging
import os

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from tennis_trainer.errors import vendor_status

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = int(os.environ.get("OPENAI_MAX_RETRIES") or 3)
BASE_DELAY = 1.0
MAX_DELAY = 30.0

# Retrying these would only repeat the same failure
NON_RETRYABLE_STATUSES = {400, 401, 413}


def is_retryable(exc: BaseException) -> bool:
    return vendor_status(exc) not in NON_RETRYABLE_STATUSES


def _log_retry(label: str):
    def before_sleep(retry_state):
        exc = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            "%s attempt %d failed. Retrying in %.1fs... (Error: %s)",
            label, retry_state.attempt_number, delay, exc,
        )
    return before_sleep


def call_with_backoff(fn, *args, label: str = "API call", attempts: int = None,
                      base_delay: float = None, **kwargs):
    """Call fn(*args, **kwargs), retrying transient failures.

    Waits base_delay * 2**(attempt - 1) between tries. Errors carrying a 400, 401 or
    413 status are raised immediately; otherwise the last error is raised once
    attempts run out.
    """
    delay = BASE_DELAY if base_delay is None else base_delay
    retrying = Retrying(
        stop=stop_after_attempt(attempts or MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=delay, min=delay, max=MAX_DELAY),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_retry(label),
        reraise=True,
    )
    return retrying(fn, *args, **kwargs)
