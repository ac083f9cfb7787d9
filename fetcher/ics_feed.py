"""Fetcher for remote iCalendar feeds."""
import logging
import time

import requests

from processor.exceptions import EmptyDocumentError, FetchFailure

logger = logging.getLogger(__name__)


class IcsFeedFetcher:
    """Downloads an ICS document over HTTP."""

    MAX_RETRIES = 3
    BASE_DELAY = 1  # seconds

    def __init__(self, url: str, timeout: int = 30):
        """
        Initialize the feed fetcher.

        Args:
            url: Address of the ICS feed
            timeout: HTTP request timeout in seconds (default: 30)
        """
        self.url = url
        self.timeout = timeout

    def fetch_document(self) -> str:
        """
        Fetch the ICS document with retry logic.

        Returns:
            Document text decoded as UTF-8

        Raises:
            FetchFailure: If no URL is configured or all retry attempts fail
            EmptyDocumentError: If the response body is empty
        """
        if not self.url:
            raise FetchFailure('No ICS URL configured')

        for attempt in range(self.MAX_RETRIES):
            try:
                logger.info(
                    f"Fetching ICS feed (attempt {attempt + 1}/{self.MAX_RETRIES})"
                )
                response = requests.get(self.url, timeout=self.timeout)
                response.raise_for_status()
                break

            except requests.RequestException as e:
                if attempt < self.MAX_RETRIES - 1:
                    # Calculate exponential backoff delay
                    delay = self.BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.MAX_RETRIES}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.MAX_RETRIES} retry attempts failed. Last error: {e}"
                    )
                    raise FetchFailure(f"Failed to fetch ICS feed: {e}") from e

        # Feeds often omit the charset; decode leniently
        document = response.content.decode('utf-8', errors='replace').lstrip('\ufeff')
        if not document.strip():
            logger.error("Empty ICS content received")
            raise EmptyDocumentError('Empty ICS content received')

        logger.info(f"Fetched ICS document ({len(document)} characters)")
        return document
