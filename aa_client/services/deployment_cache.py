"""
Deployment cache.

Remembers the account owner key and the deployed SimpleAccount and factory
addresses between runs, in a small JSON file. Callers load once at start
and save once at the end; nothing here is global.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import Settings
from ..core.execution.signer import LocalKeyBackend

logger = logging.getLogger(__name__)


class DeploymentCache(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_owner_private_key: str = Field(default="", alias="accountOwnerPrivateKey")
    simple_account_address: str = Field(default="", alias="simpleAccountAddress")
    simple_account_factory_address: str = Field(default="", alias="simpleAccountFactoryAddress")

    def owner_backend(self) -> Optional[LocalKeyBackend]:
        """Signing backend for the cached owner key, if one is cached."""
        if not self.account_owner_private_key:
            return None
        return LocalKeyBackend(self.account_owner_private_key)


class DeploymentCacheStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    @classmethod
    def from_settings(cls, settings: Settings) -> "DeploymentCacheStore":
        return cls(settings.deployment_cache_path)

    def load(self) -> Optional[DeploymentCache]:
        """Read the cache; a missing or unreadable file yields None."""
        if not self.path.exists():
            return None
        try:
            cache = DeploymentCache.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning(f"Error reading deployment cache {self.path}: {exc}")
            return None
        logger.info(f"Loaded deployment cache from {self.path}")
        return cache

    def save(self, cache: DeploymentCache) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(cache.model_dump(by_alias=True), indent=2),
                encoding="utf-8",
            )
        except OSError as exc:
            logger.error(f"Error saving deployment cache {self.path}: {exc}")
            raise
        logger.info(f"Deployment cache saved to {self.path}")
