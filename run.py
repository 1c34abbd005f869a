#!/usr/bin/env python
"""
Run script for calcpad.
This allows users to start the calculator without installing the package.
"""

import sys

from calcpad.app import main

if __name__ == "__main__":
    sys.exit(main())
