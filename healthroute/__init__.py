"""
healthroute — On-device / remote routing for natural-language health queries.

Memory-aware lifecycle of a quantized local language model (download,
verification, load, unload) with transparent fallback to a remote service.
"""

__version__ = "1.0.0"
__author__ = "healthroute Team"
