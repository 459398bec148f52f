from abc import ABC, abstractmethod
from typing import Optional

from models.data_models import PowerState
from utils.logger import get_logger

logger = get_logger(__name__)


class PowerManager(ABC):
    """Host power-management capability (battery optimization and the like)."""

    @abstractmethod
    def is_optimization_enabled(self) -> Optional[bool]:
        """True if the host may throttle or suspend the relay, None if unknown."""
        ...

    @abstractmethod
    def open_settings(self) -> None:
        ...

    @abstractmethod
    def request_exemption(self) -> bool:
        ...

    def state(self) -> PowerState:
        try:
            enabled = self.is_optimization_enabled()
        except Exception as e:
            logger.warning(f"Power optimization state unavailable: {e}")
            return PowerState.UNKNOWN
        if enabled is None:
            return PowerState.UNKNOWN
        return PowerState.OPTIMIZED if enabled else PowerState.UNOPTIMIZED


class UnmanagedPowerManager(PowerManager):
    """For servers and desktops with no per-app power policy to query."""

    def is_optimization_enabled(self) -> Optional[bool]:
        return None

    def open_settings(self) -> None:
        logger.info("This host has no power-management settings to open")

    def request_exemption(self) -> bool:
        return False
