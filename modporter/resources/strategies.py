"""
Allocation Strategies
=====================
Pluggable policies that turn a resource sample and queue backlog into a
desired worker count. Selected at runtime through StrategyFactory.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Type

from modporter.jobs.models import QueueStats
from modporter.resources.sampler import SystemResources


class AllocationStrategy(ABC):
    """
    Abstract base class for worker-count policies.

    Implementations:
        - AdaptiveStrategy: cores plus a backlog bonus, capped by memory
        - ConservativeStrategy: half the free cores, 2 GB per worker
        - AggressiveStrategy: most free cores, 1 GB per worker

    The allocator clamps the returned value to its configured bounds.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Registry name of the strategy."""
        pass

    @abstractmethod
    def target_workers(self, resources: SystemResources, stats: QueueStats) -> int:
        """
        Compute the desired worker count.

        Args:
            resources: Latest resource sample
            stats: Current queue statistics

        Returns:
            Unclamped worker count (may be 0)
        """
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class AdaptiveStrategy(AllocationStrategy):
    """Scales with free cores and pending backlog, bounded by free memory."""

    def __init__(self, per_worker_memory_mb: float = 512.0):
        if per_worker_memory_mb <= 0:
            raise ValueError(f"per_worker_memory_mb must be positive, got {per_worker_memory_mb}")
        self.per_worker_memory_mb = per_worker_memory_mb

    @property
    def name(self) -> str:
        return "adaptive"

    @staticmethod
    def backlog_factor(pending: int) -> int:
        """One extra worker per five pending jobs, at most three."""
        return min(3, math.ceil(pending / 5))

    def target_workers(self, resources: SystemResources, stats: QueueStats) -> int:
        cpu_based = math.floor(resources.available_cpu) + self.backlog_factor(stats.pending)
        memory_based = math.floor(resources.available_memory_mb / self.per_worker_memory_mb)
        return max(0, min(cpu_based, memory_based))

    def __repr__(self) -> str:
        return f"AdaptiveStrategy(per_worker_memory_mb={self.per_worker_memory_mb})"


class ConservativeStrategy(AllocationStrategy):
    name = "conservative"

    def target_workers(self, resources: SystemResources, stats: QueueStats) -> int:
        return max(0, min(
            math.floor(resources.available_cpu * 0.5),
            math.floor(resources.available_memory_mb / 2048),
        ))


class AggressiveStrategy(AllocationStrategy):
    name = "aggressive"

    def target_workers(self, resources: SystemResources, stats: QueueStats) -> int:
        return max(0, min(
            math.floor(resources.available_cpu * 0.9),
            math.floor(resources.available_memory_mb / 1024),
        ))


class StrategyFactory:
    """
    Factory for allocation strategies.

    Usage:
        strategy = StrategyFactory.create("adaptive", per_worker_memory_mb=768)
        StrategyFactory.register("custom", CustomStrategy)
        names = StrategyFactory.available_strategies()
    """

    # Registry of available strategies
    _strategies: dict[str, Type[AllocationStrategy]] = {
        "adaptive": AdaptiveStrategy,
        "conservative": ConservativeStrategy,
        "aggressive": AggressiveStrategy,
    }

    @classmethod
    def create(cls, name: str, **kwargs) -> AllocationStrategy:
        """
        Create a strategy by name.

        Args:
            name: Strategy identifier ('adaptive', 'conservative', ...)
            **kwargs: Constructor arguments for the strategy

        Returns:
            AllocationStrategy instance

        Raises:
            ValueError: If the name is not registered
        """
        key = name.lower()
        if key not in cls._strategies:
            available = ", ".join(cls.available_strategies())
            raise ValueError(
                f"Unknown allocation strategy: '{name}'. "
                f"Available strategies: {available}"
            )
        return cls._strategies[key](**kwargs)

    @classmethod
    def register(cls, name: str, strategy_class: Type[AllocationStrategy]) -> None:
        """Register a strategy class under a name."""
        if not issubclass(strategy_class, AllocationStrategy):
            raise TypeError(f"{strategy_class.__name__} is not an AllocationStrategy")
        cls._strategies[name.lower()] = strategy_class

    @classmethod
    def unregister(cls, name: str) -> None:
        del cls._strategies[name.lower()]

    @classmethod
    def available_strategies(cls) -> list[str]:
        return sorted(cls._strategies)
