"""
Core configuration and command line interface.
"""
