"""Engine settings and provider inventory."""
from .settings import EngineSettings
from .inventory import ProviderInventory

__all__ = ["EngineSettings", "ProviderInventory"]
