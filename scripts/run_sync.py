#!/usr/bin/env python
"""
Run Sync Script
Command-line wrapper around jira_sync.cli for running from a checkout.
"""

import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from jira_sync.cli import main


if __name__ == '__main__':
    sys.exit(main())
