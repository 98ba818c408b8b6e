from .deployment_cache import DeploymentCache, DeploymentCacheStore

__all__ = [
    "DeploymentCache",
    "DeploymentCacheStore",
]
