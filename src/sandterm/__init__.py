"""
sandterm: browser-delivered shell access to short-lived sandboxes.
"""

__version__ = "0.1.0"
