"""
Core package: settings, structured logging and token/security helpers.
"""
