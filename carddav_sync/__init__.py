"""
carddav_sync - Bidirectional contacts database / CardDAV file store sync.

Keeps a relational contacts database and a Radicale-style collection tree
consistent in both directions, fanning each address book out to one
CardDAV account per subscribed user.
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
