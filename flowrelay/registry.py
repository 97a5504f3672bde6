"""Registry of chain definitions addressable by id."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .chain import Chain

logger = logging.getLogger(__name__)


class ChainRegistry:
    """Maps chain ids to definitions so suspended executions can be resumed.

    A resumed execution only carries its ``chain_id``; the registry is how the
    runtime finds the definition again, possibly in a different process.
    """

    def __init__(self, chains: Optional[List[Chain]] = None) -> None:
        self._chains: Dict[str, Chain] = {}
        for chain in chains or []:
            self.register(chain)

    def register(self, chain: Chain, *, replace: bool = False) -> None:
        """Register ``chain`` under its id."""
        existing = self._chains.get(chain.id)
        if existing is not None and existing is not chain and not replace:
            raise ValueError(f"Chain '{chain.id}' is already registered")
        self._chains[chain.id] = chain
        logger.debug(f"Registered chain {chain.id} ({len(chain)} steps)")

    def get(self, chain_id: str) -> Optional[Chain]:
        return self._chains.get(chain_id)

    def all(self) -> List[Chain]:
        return list(self._chains.values())

    def __contains__(self, chain_id: object) -> bool:
        return chain_id in self._chains

    def __len__(self) -> int:
        return len(self._chains)
