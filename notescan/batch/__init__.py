"""
Parallel matching and batched persistence.
"""
from .circuit_breaker import CircuitBreaker
from .scheduler import ChunkScheduler, weighted_fraction
from .writer import BatchWriter

__all__ = ["BatchWriter", "ChunkScheduler", "CircuitBreaker", "weighted_fraction"]
