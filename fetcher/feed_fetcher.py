"""Conditional HTTP fetcher for external iCalendar feeds."""
import logging
import time
from typing import Optional

import requests

from processor.models import FetchResult

logger = logging.getLogger(__name__)


class FeedFetcher:
    """Fetcher for remote ICS feeds using HTTP conditional requests."""

    USER_AGENT = 'calendar-feed-sync/1.0'

    def __init__(self, timeout: int = 30, max_retries: int = 3, backoff_base: float = 1):
        """
        Initialize the feed fetcher.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
            max_retries: Attempts made for transport errors and 5xx responses
            backoff_base: Base delay in seconds for exponential backoff
        """
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base

    def fetch(
        self,
        url: str,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None
    ) -> FetchResult:
        """
        Fetch a feed, sending validators from the previous sync.

        Args:
            url: Normalized feed URL
            etag: ETag from the previous successful fetch
            last_modified: Last-Modified from the previous successful fetch

        Returns:
            FetchResult with status 304 (unchanged), 200 (body) or an error
        """
        headers = {
            'Accept': 'text/calendar, */*;q=0.8',
            'User-Agent': self.USER_AGENT
        }
        if etag:
            headers['If-None-Match'] = etag
        if last_modified:
            headers['If-Modified-Since'] = last_modified

        try:
            response = self._get_with_retries(url, headers)
        except requests.RequestException as e:
            return FetchResult(
                status=None,
                error=f'Could not fetch calendar from the provided URL: {e}'
            )

        response_etag = response.headers.get('ETag')
        response_last_modified = response.headers.get('Last-Modified')

        if response.status_code == 304:
            logger.info(f"Feed not modified: {url}")
            return FetchResult(
                status=304,
                etag=response_etag or etag,
                last_modified=response_last_modified or last_modified
            )

        if response.status_code != 200:
            logger.warning(f"Feed returned HTTP {response.status_code}: {url}")
            return FetchResult(
                status=response.status_code,
                error=(
                    'Could not fetch calendar from the provided URL '
                    f'(HTTP {response.status_code})'
                )
            )

        # requests falls back to ISO-8859-1 for text/* without a charset
        if 'charset' not in response.headers.get('Content-Type', '').lower():
            response.encoding = 'utf-8'
        body = response.text

        if not body or not body.strip():
            return FetchResult(status=200, error='Feed returned an empty body')

        logger.info(f"Fetched {len(body)} characters from {url}")
        return FetchResult(
            status=200,
            etag=response_etag,
            last_modified=response_last_modified,
            body=body
        )

    def _get_with_retries(self, url: str, headers: dict) -> requests.Response:
        """
        GET a URL with retry logic for transport errors and server errors.

        Returns:
            The final response (which may still carry a 5xx status)

        Raises:
            requests.RequestException: If every attempt fails at transport level
        """
        for attempt in range(self.max_retries):
            try:
                logger.info(
                    f"Fetching feed {url} (attempt {attempt + 1}/{self.max_retries})"
                )
                response = requests.get(url, headers=headers, timeout=self.timeout)
                if response.status_code < 500 or attempt == self.max_retries - 1:
                    return response
                logger.warning(
                    f"Server error {response.status_code} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )

            except requests.RequestException as e:
                if attempt == self.max_retries - 1:
                    logger.error(
                        f"All {self.max_retries} attempts failed. Last error: {e}"
                    )
                    raise
                logger.warning(
                    f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}"
                )

            delay = self.backoff_base * (2 ** attempt)
            logger.info(f"Retrying in {delay} seconds...")
            time.sleep(delay)
