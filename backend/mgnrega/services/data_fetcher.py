import logging
import time
from typing import Callable, Optional

import requests
from requests.adapters import HTTPAdapter

logger = logging.getLogger("etl.fetch")

MAX_ATTEMPTS = 3
BACKOFF_SECONDS = 1.0
# Retrying these cannot succeed
NON_RETRYABLE_STATUS = (401, 404)

# (url, status_code, response_size, error_message)
AttemptRecorder = Callable[[str, Optional[int], Optional[int], Optional[str]], None]


class FetchError(Exception):
    def __init__(self, message, status_code=None, attempts=0):
        super().__init__(message)
        self.status_code = status_code
        self.attempts = attempts


def get_session(pool_size=10):
    s = requests.Session()
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    s.headers.update({"User-Agent": "MGNREGA-Tracker/1.0", "Accept": "application/json"})
    return s


def build_district_params(district, api_key, limit=12):
    """Query parameters for one district, without the api key and with it."""
    public = {
        "format": "json",
        "filters[state_code]": district.state_code,
        "filters[district_code]": district.district_code,
        "limit": limit,
        "sort": "date desc",
    }
    return public, {"api-key": api_key, **public}


def public_url(url, params):
    return requests.Request("GET", url, params=params).prepare().url


def fetch_with_retry(
    session: requests.Session,
    url: str,
    params=None,
    *,
    log_url: Optional[str] = None,
    secret: Optional[str] = None,
    record_attempt: Optional[AttemptRecorder] = None,
    max_attempts: int = MAX_ATTEMPTS,
    backoff: float = BACKOFF_SECONDS,
    timeout: float = 15.0,
    sleep: Callable[[float], None] = time.sleep,
):
    """GET ``url`` and return its JSON body.

    Makes at most ``max_attempts`` requests, sleeping ``backoff`` seconds
    after the first failure and doubling each time. A 401 or 404 stops
    immediately. Each attempt is reported to ``record_attempt``; ``secret``
    is masked out of error text. Raises ``FetchError`` once no attempts
    remain.
    """
    log_url = log_url or url
    delay = backoff
    last_error = None
    last_status = None

    for attempt in range(1, max_attempts + 1):
        last_status = None
        try:
            response = session.get(url, params=params, timeout=timeout)
            last_status = response.status_code
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError:
            last_error = f"HTTP {last_status} {response.reason or ''}".strip()
        except (requests.RequestException, ValueError) as e:
            last_error = str(e) or e.__class__.__name__
            if secret:
                last_error = last_error.replace(secret, "***")
        else:
            if record_attempt:
                record_attempt(log_url, last_status, len(response.content), None)
            return data

        logger.warning(
            "Fetch attempt %d/%d failed for %s: %s", attempt, max_attempts, log_url, last_error,
            extra={"url": log_url, "status": last_status, "attempt": attempt},
        )
        if record_attempt:
            record_attempt(log_url, last_status, None, last_error)

        if last_status in NON_RETRYABLE_STATUS:
            raise FetchError(last_error, status_code=last_status, attempts=attempt)
        if attempt < max_attempts:
            sleep(delay)
            delay *= 2

    raise FetchError(last_error, status_code=last_status, attempts=max_attempts)
