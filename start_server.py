#!/usr/bin/env python3
"""
Start the quotesync publisher
"""
import sys
import os

# Add current directory to Python path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from quotesync.cli import server_main

if __name__ == '__main__':
    sys.exit(server_main())
