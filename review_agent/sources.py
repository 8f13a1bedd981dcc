"""File content sources used to fetch both sides of a changed file."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class ContentSource(Protocol):
    async def fetch_file_content(self, ref: str, filename: str) -> Optional[str]:
        """Text of ``filename`` at ``ref``; None if absent, binary or unfetchable."""
        ...


class StaticContentSource:
    """Serves contents from in-memory snapshots keyed by ref, then path."""

    def __init__(self, snapshots: Mapping[str, Mapping[str, str]]):
        self._snapshots = snapshots

    async def fetch_file_content(self, ref: str, filename: str) -> Optional[str]:
        content = self._snapshots.get(ref, {}).get(filename)
        if content is None:
            logger.debug("No content for %s at %s", filename, ref)
        return content
