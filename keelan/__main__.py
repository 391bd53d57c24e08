#!/usr/bin/env python3
"""
Keelan entry point.
Allows running as: python3 -m keelan <command>
"""

import sys

from keelan.cli import main

if __name__ == "__main__":
    sys.exit(main())
