"""
Canvass: sync core for door-to-door sales visit tracking.
"""

__version__ = "0.1.0"
