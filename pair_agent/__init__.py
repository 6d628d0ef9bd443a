"""Pair Agent - AI pair programming assistant for the terminal"""

__version__ = "1.0.0"
