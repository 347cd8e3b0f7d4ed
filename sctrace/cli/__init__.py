"""Command-line interface for sctrace.

Example Usage
-------------
    # From command line:
    sctrace --help
    sctrace init-config --out analysis.yaml
    sctrace validate-config --config analysis.yaml --manifest samples.csv
    sctrace run --manifest samples.csv --config analysis.yaml --out results/
"""

__version__ = "1.0.0"

from .main import cli, main

__all__ = [
    "__version__",
    "cli",
    "main",
]
