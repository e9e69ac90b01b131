"""
cashu-wallet: command-line Cashu wallet driving an external ecash engine.
"""

__version__ = "0.3.0"
