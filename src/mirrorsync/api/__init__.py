"""
HTTP API for MirrorSync.
"""
