#!/usr/bin/env python3
"""
Main entry point for the keyhold CLI.

This delegates to the UI layer in keyhold.ui.cli to keep the
console script mapping stable.
"""

from keyhold.ui.cli import run as keyhold


if __name__ == "__main__":
    keyhold()
