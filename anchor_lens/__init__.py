"""
Anchor Lens: decode Anchor program accounts, instructions and events
from their interface documents
"""

__version__ = "0.1.0"
