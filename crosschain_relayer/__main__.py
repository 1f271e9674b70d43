"""
Entry point for running the relayer as a module.

Usage:
    python -m crosschain_relayer
"""

from crosschain_relayer.cli import main

if __name__ == "__main__":
    main()
