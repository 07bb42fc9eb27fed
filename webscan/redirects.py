"""Redirect bookkeeping for one collection.

Every accepted redirect is stored as ``target -> source`` so the chain that
led to any URL can be rebuilt by walking backwards.
"""

import logging
from typing import Dict, List

logger = logging.getLogger(__name__)

MAX_REDIRECTS = 10


class RedirectManager:
    """
    Records redirect hops and rebuilds the chain leading to a URL.

    Usage:
        redirects = RedirectManager()
        redirects.add("https://a.test/", "https://b.test/")
        redirects.add("https://b.test/", "https://c.test/")
        redirects.calculate("https://c.test/")  # ["https://a.test/", "https://b.test/"]

    Chains are append-only for the lifetime of the manager.
    """

    def __init__(self, limit: int = MAX_REDIRECTS):
        self.limit = limit
        self._sources: Dict[str, str] = {}

    def add(self, source: str, target: str) -> bool:
        """
        Record that ``source`` redirected to ``target``.

        Returns:
            False without recording anything when ``source == target``; the
            caller has to treat that request as an infinite loop.
        """
        if source == target:
            return False

        self._sources[target] = source
        return True

    def calculate(self, url: str) -> List[str]:
        """
        URLs traversed before reaching ``url``, oldest first.

        Returns an empty list when ``url`` was never the target of a redirect.
        A cycle in the recorded hops stops the walk instead of looping.
        """
        hops: List[str] = []
        seen = {url}
        current = url

        while current in self._sources:
            current = self._sources[current]
            if current in seen:
                logger.debug(f"Redirect cycle detected while calculating hops for {url}")
                break
            seen.add(current)
            hops.insert(0, current)

        return hops

    def exceeds_limit(self, source: str) -> bool:
        """Whether following one more redirect from ``source`` would reach the hop limit."""
        return len(self.calculate(source)) + 1 >= self.limit

    def __contains__(self, url: str) -> bool:
        return url in self._sources

    def __len__(self) -> int:
        return len(self._sources)
