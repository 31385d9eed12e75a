#!/usr/bin/env python
"""
Test runner for keyhold.

Runs all tests, or a single module given by its short name
(e.g. ``codec`` for ``tests/test_codec.py``).
"""

import os
import subprocess
import sys
from pathlib import Path


def run_tests(test_pattern="", verbose=True):
    """
    Run pytest on tests/ or on one test module.

    Args:
        test_pattern: Test file name under tests/ (default: everything)
        verbose: Pass -v to pytest
    """
    project_root = Path(__file__).resolve().parent.parent
    os.chdir(project_root)

    target = f"tests/{test_pattern}" if test_pattern else "tests/"
    cmd = [sys.executable, "-m", "pytest", target, "--tb=short"]
    if verbose:
        cmd.append("-v")

    print(f"Running: {' '.join(cmd)}")
    print("=" * 60)

    try:
        result = subprocess.run(cmd, check=False)
    except FileNotFoundError:
        print("Error: pytest not found. Install with: pip install -e '.[test]'")
        return False
    return result.returncode == 0


def main():
    test_module = ""
    if len(sys.argv) > 1:
        test_module = sys.argv[1]
        if not test_module.startswith("test_"):
            test_module = f"test_{test_module}"
        if not test_module.endswith(".py"):
            test_module = f"{test_module}.py"

    if not run_tests(test_module):
        print("\nSome tests failed.")
        sys.exit(1)
    print("\nAll tests passed.")


if __name__ == "__main__":
    main()
