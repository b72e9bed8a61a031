"""
Resources Module
================
Host sampling, allocation strategies and the resource allocator.

Strategy Pattern:
    - AllocationStrategy: Abstract base for worker-count policies
    - AdaptiveStrategy / ConservativeStrategy / AggressiveStrategy
    - StrategyFactory: Runtime selection by name
"""

from .sampler import FALLBACK_RESOURCES, ResourceSampler, SystemResources
from .strategies import (
    AdaptiveStrategy,
    AggressiveStrategy,
    AllocationStrategy,
    ConservativeStrategy,
    StrategyFactory,
)
from .allocator import ResourceAllocation, ResourceAllocator, ResourceRequirements

__all__ = [
    "FALLBACK_RESOURCES",
    "ResourceSampler",
    "SystemResources",
    "AdaptiveStrategy",
    "AggressiveStrategy",
    "AllocationStrategy",
    "ConservativeStrategy",
    "StrategyFactory",
    "ResourceAllocation",
    "ResourceAllocator",
    "ResourceRequirements",
]
