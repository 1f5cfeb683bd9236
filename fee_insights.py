#!/usr/bin/env python3
"""
Entry script for the fee insights service.
Delegates to the feeinsights package; equivalent to the ``fee-insights`` console script.
"""

from feeinsights.cli import main

if __name__ == "__main__":
    main()
