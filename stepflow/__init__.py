"""
stepflow - compiles node/edge workflow definitions into ordered pipelines and
executes them against pluggable connectors.
"""

__version__ = "1.0.0"
