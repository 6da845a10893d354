"""
Shared helpers for MirrorSync.
"""
