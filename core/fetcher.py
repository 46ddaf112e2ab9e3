"""
fetcher.py -- Outbound fetch of the configuration subscription document.

The owner can point the site at a URL that serves the file-declared
configuration. ConfigService.refresh_subscription() pulls it through here and
reconciles it like an uploaded file.
"""

import logging
from typing import Optional

import requests

logger = logging.getLogger("tvcore.fetcher")

# Module-level session shared across calls for connection pooling.
# max_redirects=3 replaces the requests default of 30 -- protects against
# open redirect / SSRF via long redirect chains.
_session = requests.Session()
_session.max_redirects = 3

_MAX_DOCUMENT_BYTES = 2 * 1024 * 1024


def fetch_config_document(url: str, timeout: float = 10) -> Optional[str]:
    """Fetch the raw subscription document text.

    Returns None on network failure, non-2xx status, a non-http(s) URL, or a
    body larger than 2 MiB. Callers keep the current configuration in that case.
    """
    if not url.startswith(("http://", "https://")):
        logger.warning("Refusing to fetch subscription from non-http URL")
        return None
    try:
        resp = _session.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Subscription fetch failed for %s: %s", url, e)
        return None
    if len(resp.content) > _MAX_DOCUMENT_BYTES:
        logger.warning("Subscription document from %s exceeds %d bytes", url, _MAX_DOCUMENT_BYTES)
        return None
    return resp.text
