#!/usr/bin/env python3
"""Report duplicated machine code in an x86-64 ELF binary."""

from __future__ import annotations

import sys

from dupscan.cli import main

if __name__ == "__main__":
    sys.exit(main())
