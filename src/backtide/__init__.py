"""
backtide - ephemeral backtest, hyperopt and market-data download workloads.

Packages:
    backtide.core       - errors, logging, settings, enums
    backtide.runner     - backend-neutral contract, backend registry, result parsing
    backtide.kubernetes - clustered backend built on the official kubernetes client
    backtide.cli        - operator CLI
"""

__version__ = "0.1.0"
