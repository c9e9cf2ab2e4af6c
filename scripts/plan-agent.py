#!/usr/bin/env python3
"""
Plan Agent
Executes YAML implementation plans with coding agents, one workspace at a time.

Usage:
    python scripts/plan-agent.py agent [PLAN | --next | --next-ready ID] [--serial-tasks] [--dry-run]
    python scripts/plan-agent.py ready
    python scripts/plan-agent.py lock status [WORKSPACE]

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), ".."))

from plan_agent.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
