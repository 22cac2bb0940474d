"""
carddav_sync.sync - Synchronization core

vCard codec, contact model, conflict detection, the reconciliation passes
and the filesystem watcher.
"""
