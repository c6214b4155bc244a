"""
Persistence of the matchmaking announce endpoints.

The list lives in a plain text file, one URL per line.  An empty or missing
file means "use the defaults".
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Union

LOG = logging.getLogger(__name__)

DEFAULT_POOLS = (
    "wss://tracker.openwebtorrent.com",
    "wss://tracker.btorrent.xyz",
    "wss://tracker.fastcast.nz",
    "wss://tracker.webtorrent.dev",
)


def split_pools(text: str) -> List[str]:
    return [line.strip() for line in str(text or "").splitlines() if line.strip()]


class PoolStore:
    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def raw(self) -> str:
        """Stored text, or an empty string when nothing was saved."""

        try:
            return self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return ""

    def load(self) -> List[str]:
        pools = split_pools(self.raw())
        return pools or list(DEFAULT_POOLS)

    def save(self, pools: Union[str, Iterable[str]]) -> List[str]:
        if isinstance(pools, str):
            entries = split_pools(pools)
        else:
            entries = [str(entry).strip() for entry in pools if str(entry).strip()]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("\n".join(entries), encoding="utf-8")
        LOG.info("Saved %d pool endpoint(s) to %s", len(entries), self.path)
        return entries or list(DEFAULT_POOLS)

    def restore_defaults(self) -> List[str]:
        return self.save(DEFAULT_POOLS)


__all__ = ["DEFAULT_POOLS", "PoolStore", "split_pools"]
