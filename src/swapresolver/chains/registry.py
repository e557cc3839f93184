"""Chain id -> client registry."""

import logging
from typing import Iterable

from swapresolver.chains.base import ChainClient
from swapresolver.errors import UnknownChainError

logger = logging.getLogger(__name__)


class ChainRegistry:
    """Clients resolved once at construction and looked up by chain id."""

    def __init__(self, clients: Iterable[ChainClient] = ()):
        self._clients: dict[int, ChainClient] = {}
        for client in clients:
            self.register(client)

    def register(self, client: ChainClient) -> None:
        if client.chain_id in self._clients:
            raise ValueError(f"Chain {client.chain_id} already registered")
        self._clients[client.chain_id] = client
        logger.debug(f"Registered {type(client).__name__} for chain {client.chain_id}")

    def get(self, chain_id: int) -> ChainClient:
        """Get the client for a chain.

        Raises:
            UnknownChainError: if no client is registered
        """
        try:
            return self._clients[chain_id]
        except KeyError:
            raise UnknownChainError(chain_id)

    def __contains__(self, chain_id: int) -> bool:
        return chain_id in self._clients

    @property
    def chain_ids(self) -> list[int]:
        return sorted(self._clients)
