"""
plan-agent: executes YAML implementation plans through coding-agent
subprocesses with workspace locking.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

__version__ = "0.1.0"
