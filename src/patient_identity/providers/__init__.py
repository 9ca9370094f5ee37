"""
External System Clients Package

This package contains the clients used to look patients up in external
clinical systems (EMR, laboratory, pharmacy).

Available Clients:
- HttpExternalSystemClient: JSON-over-HTTP lookups via aiohttp
- InMemoryExternalSystemClient: Registered fixture records, for local runs and tests

All clients implement the BaseExternalSystemClient interface.
"""

from .base_provider import BaseExternalSystemClient
from .http_provider import HttpExternalSystemClient
from .memory_provider import InMemoryExternalSystemClient

__all__ = [
    # Base classes
    'BaseExternalSystemClient',

    # Client implementations
    'HttpExternalSystemClient',
    'InMemoryExternalSystemClient'
]

# Client registry for dynamic loading
CLIENT_REGISTRY = {
    'http': HttpExternalSystemClient,
    'memory': InMemoryExternalSystemClient
}


def get_client_class(client_name: str):
    """
    Get client class by name

    Args:
        client_name: Name of the client ('http', 'memory')

    Returns:
        Client class

    Raises:
        ValueError: If client name is not recognized
    """
    client_name = client_name.lower()

    if client_name not in CLIENT_REGISTRY:
        available = ', '.join(CLIENT_REGISTRY.keys())
        raise ValueError(f"Unknown client '{client_name}'. Available clients: {available}")

    return CLIENT_REGISTRY[client_name]


def create_client(client_name: str, **kwargs) -> BaseExternalSystemClient:
    """
    Create client instance by name

    Args:
        client_name: Name of the client
        **kwargs: Arguments passed to the client constructor

    Returns:
        Client instance
    """
    client_class = get_client_class(client_name)
    return client_class(**kwargs)
