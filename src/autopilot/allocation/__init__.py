"""Capital allocation layer -- spot/futures split, transfers and asset conversion."""

from autopilot.allocation.allocator import CapitalAllocator
from autopilot.allocation.converter import AssetConverter

__all__ = ["AssetConverter", "CapitalAllocator"]
