"""
CDN cache invalidation for published derivatives.
"""
import requests


class CdnPurger:
    """Sends HTTP PURGE requests for derivative URLs"""

    def __init__(self, timeout=5):
        self.timeout = timeout

    def purge(self, urls, logger=None):
        """
        Purge each URL from the CDN.

        Failures are logged and otherwise ignored.
        """
        def log(message):
            if logger:
                logger(message)

        for url in urls:
            try:
                response = requests.request('PURGE', url, timeout=self.timeout)
                log(f"Purged {url}: {response.status_code}")
            except requests.RequestException as e:
                log(f"Purge failed for {url}: {e}")


class NullPurger:
    """Purger that does nothing, for deployments without a CDN"""

    def purge(self, urls, logger=None):
        pass
