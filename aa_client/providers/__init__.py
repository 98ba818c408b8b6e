from .base import JsonRpcError, JsonRpcProvider, Provider
from .bundler import (
    BundlerConfig,
    BundlerErrorNormalizer,
    BundlerProvider,
    dummy_signature,
    get_bundler_provider,
)
from .node import NodeProvider, get_node_provider

__all__ = [
    "Provider",
    "JsonRpcProvider",
    "JsonRpcError",
    "BundlerConfig",
    "BundlerErrorNormalizer",
    "BundlerProvider",
    "dummy_signature",
    "get_bundler_provider",
    "NodeProvider",
    "get_node_provider",
]
