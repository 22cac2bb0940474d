"""
carddav_sync.storage - Persistence

SQLite contact database, the CardDAV collection tree on disk, and one-time
layout migrations.
"""
