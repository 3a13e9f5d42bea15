"""
EVM GPU benchmark module
"""

from .performance_tests import (
    EVMBenchmarkSuite,
    BenchmarkResult,
    run_quick_benchmark
)

__all__ = [
    'EVMBenchmarkSuite',
    'BenchmarkResult',
    'run_quick_benchmark'
]
