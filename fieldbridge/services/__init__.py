"""
Gateway Services

- Device Service - driver I/O, polling, writes, watchdogs and aliases
"""
