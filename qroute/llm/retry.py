from collections.abc import Iterator
from contextlib import contextmanager

import litellm
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from qroute.constants import LLM_MAX_ATTEMPTS
from qroute.errors import QrouteError, UpstreamTimeout, UpstreamUnavailable
from qroute.logging import get_logger

_logger = get_logger(__name__)

_TRANSIENT_ERRORS = (
    litellm.RateLimitError,
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (litellm.Timeout, *_TRANSIENT_ERRORS)):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status in {408, 409, 429} or status >= 500
    return False


def _log_retry(retry_state) -> None:
    _logger.warning(
        "LLM call failed, retrying",
        attempt=retry_state.attempt_number,
        max_attempts=LLM_MAX_ATTEMPTS,
        error=str(retry_state.outcome.exception()),
    )


@retry(
    retry=retry_if_exception(_is_retryable),
    stop=stop_after_attempt(LLM_MAX_ATTEMPTS),
    wait=wait_exponential_jitter(initial=0.5, max=8, jitter=2),
    reraise=True,
    before_sleep=_log_retry,
)
async def with_retry(fn, *args, **kwargs):
    return await fn(*args, **kwargs)


@contextmanager
def upstream_errors(service: str) -> Iterator[None]:
    """Translate provider failures into the upstream error taxonomy."""
    try:
        yield
    except QrouteError:
        raise
    except litellm.Timeout as e:
        raise UpstreamTimeout(f"{service} timed out") from e
    except _TRANSIENT_ERRORS as e:
        raise UpstreamUnavailable(f"{service} unavailable: {e}") from e
