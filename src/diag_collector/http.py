from __future__ import annotations

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from diag_collector.__version__ import __version__ as VERSION

DEFAULT_CONNECT_TIMEOUT = 15
DEFAULT_READ_TIMEOUT = 300
DEFAULT_TIMEOUT = (DEFAULT_CONNECT_TIMEOUT, DEFAULT_READ_TIMEOUT)
DEFAULT_RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


def build_user_agent(name: str = "diag-collector", version: str = VERSION) -> str:
    """Build a default User-Agent string."""
    return f"{name}/{version}"


def create_retry_session(
    *,
    total_retries: int = 3,
    backoff_factor: float = 0.5,
    status_forcelist: set[int] | None = None,
    pool_size: int = 10,
) -> requests.Session:
    """Create a requests session with basic retry/backoff handling.

    Only idempotent reads are retried; profile downloads (POST) get a single attempt.
    """
    status_list = status_forcelist or DEFAULT_RETRY_STATUS_CODES
    retries = Retry(
        total=total_retries,
        backoff_factor=backoff_factor,
        status_forcelist=list(status_list),
        allowed_methods=("GET", "HEAD"),
        raise_on_status=False,
    )
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=retries, pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers["User-Agent"] = build_user_agent()
    return session
