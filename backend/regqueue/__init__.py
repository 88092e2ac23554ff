"""
Registration queue: admission control for high-demand registration flows.
"""

__version__ = "1.0.0"
