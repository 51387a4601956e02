"""Conversational legal lead-intake engine.

Turns a free-text chat into a validated lead record and submits it once
to an external lead marketplace.
"""

__version__ = "0.1.0"
