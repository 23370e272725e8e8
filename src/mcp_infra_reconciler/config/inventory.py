"""Provider inventory management from YAML configuration."""
import logging
import os
from pathlib import Path
from typing import Optional

import yaml

from ..providers import create_provider, ProviderRegistry, ResourceProvider

logger = logging.getLogger(__name__)


class ProviderInventory:
    """Manages the provider inventory loaded from YAML config.

    ```yaml
    defaults:
      timeout: 30
      token_env: CLOUD_API_TOKEN

    providers:
      aws:
        type: http
        endpoint: https://cloud.example.com/api/v1
        prefixes: [aws_]
        replace_on_change:
          aws_instance: [user_data]
      local:
        type: memory
        prefixes: [local_]
    ```

    When no ``prefixes`` are given, the provider id plus an underscore is used
    (``aws`` handles ``aws_*``).
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._find_config()
        self._config: dict = {}
        self._providers: dict[str, ResourceProvider] = {}
        self._load_config()

    @classmethod
    def from_dict(cls, data: dict) -> "ProviderInventory":
        """Build an inventory from an already-loaded mapping."""
        inv = cls.__new__(cls)
        inv.config_path = None
        inv._config = data
        inv._providers = {}
        inv._apply_defaults()
        return inv

    def _find_config(self) -> str:
        """Find the providers.yaml config file."""
        search_paths = []
        env_path = os.environ.get("STACKCRAFT_PROVIDERS")
        if env_path:
            search_paths.append(Path(env_path).expanduser())
        search_paths += [
            Path.cwd() / "providers.yaml",
            Path.home() / ".stackcraft" / "providers.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return str(path)

        raise FileNotFoundError(
            "Could not find providers.yaml. Create one in the working directory "
            "or set STACKCRAFT_PROVIDERS"
        )

    def _load_config(self) -> None:
        """Load the YAML configuration."""
        with open(self.config_path) as f:
            self._config = yaml.safe_load(f) or {}
        self._apply_defaults()

    def _apply_defaults(self) -> None:
        defaults = self._config.get("defaults", {}) or {}
        providers = self._config.get("providers", {}) or {}
        for provider_id, provider_config in providers.items():
            if not isinstance(provider_config, dict):
                raise ValueError(f"Provider '{provider_id}' must be a mapping")
            for key, value in defaults.items():
                if key not in provider_config:
                    provider_config[key] = value
            provider_config.setdefault("name", provider_id)
            if not provider_config.get("prefixes"):
                provider_config["prefixes"] = [f"{provider_id}_"]
        self._config["providers"] = providers

    def get_provider_ids(self) -> list[str]:
        """Get all provider IDs."""
        return list(self._config.get("providers", {}).keys())

    def get_provider_config(self, provider_id: str) -> dict:
        """Get raw config for a provider."""
        providers = self._config.get("providers", {})
        if provider_id not in providers:
            raise KeyError(f"Unknown provider: {provider_id}")
        return providers[provider_id]

    def get_provider(self, provider_id: str) -> ResourceProvider:
        """Get or create a provider instance."""
        if provider_id not in self._providers:
            config = self.get_provider_config(provider_id)
            self._providers[provider_id] = create_provider(provider_id, dict(config))
        return self._providers[provider_id]

    def build_registry(self) -> ProviderRegistry:
        """Create a registry routing resource types to providers."""
        registry = ProviderRegistry()
        for provider_id in self.get_provider_ids():
            provider = self.get_provider(provider_id)
            for prefix in self.get_provider_config(provider_id)["prefixes"]:
                registry.register(prefix, provider)
        logger.debug(f"Provider registry built with {len(self.get_provider_ids())} providers")
        return registry

    async def close_all(self) -> None:
        """Close all provider clients."""
        for provider in self._providers.values():
            await provider.close()
        self._providers.clear()
