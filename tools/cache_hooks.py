"""Notify downstream readers that a group's public view changed.

Invalidation is best-effort. Implementations may raise on failure; the group
resolver logs and swallows those errors because a stale cached view is
preferable to an unassigned listing.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import requests
from requests import Session

logger = logging.getLogger(__name__)

ALL_GROUPS_TAG = "groups:all"
DISCOVER_TAG = "discover:all"


def cache_tags_for_group(group_id: str) -> List[str]:
    """Return the cache tags that render data from ``group_id``."""
    return [f"group:{group_id}", ALL_GROUPS_TAG, DISCOVER_TAG]


class CacheInvalidator:
    """Base hook; the default does nothing."""

    def invalidate_group(self, group_id: str) -> None:
        pass


class NullInvalidator(CacheInvalidator):
    pass


class RecordingInvalidator(CacheInvalidator):
    """Keeps the invalidated tags in memory (dry runs, tests)."""

    def __init__(self) -> None:
        self.group_ids: List[str] = []
        self.tags: List[str] = []

    def invalidate_group(self, group_id: str) -> None:
        self.group_ids.append(group_id)
        self.tags.extend(cache_tags_for_group(group_id))


class HttpInvalidator(CacheInvalidator):
    """POST the group's cache tags to a revalidation endpoint."""

    def __init__(
        self,
        endpoint: str,
        secret: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[Session] = None,
    ) -> None:
        if not endpoint:
            raise ValueError("Invalidation endpoint must not be empty.")
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if secret:
            self.session.headers.update({"Authorization": f"Bearer {secret}"})

    def invalidate_group(self, group_id: str) -> None:
        tags = cache_tags_for_group(group_id)
        response = self.session.post(self.endpoint, json={"tags": tags}, timeout=self.timeout)
        response.raise_for_status()
        logger.debug("Invalidated %s via %s.", tags, self.endpoint)


def build_invalidator(endpoint: Optional[str], secret: Optional[str] = None, timeout: float = 10.0) -> CacheInvalidator:
    if not endpoint:
        return NullInvalidator()
    return HttpInvalidator(endpoint, secret=secret, timeout=timeout)
