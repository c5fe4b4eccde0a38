"""
clearpass: browser-backed fetching for sites behind bot-verification walls.
"""

__version__ = "0.1.0"
