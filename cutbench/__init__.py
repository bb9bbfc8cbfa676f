"""
CutBench

Reproduces and quantifies CPU-scheduler contention caused by a cheap query
executed at extreme frequency next to a realistic mixed workload.
"""

__version__ = "0.1.0"
