#!/usr/bin/env python3
"""
MovieNight Discord Bot - Main Entry Point
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from app.__main__ import main

if __name__ == "__main__":
    main()
