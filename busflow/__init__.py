"""
busflow - bus fleet scheduling on a time-expanded network.
"""

__version__ = "0.1.0"
