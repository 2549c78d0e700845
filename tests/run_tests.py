#!/usr/bin/env python3
"""Test runner script for the Cogitap test suite."""

import argparse
import subprocess
import sys
from pathlib import Path

TEST_DIR = Path(__file__).parent

# name -> (banner, pytest arguments)
SUITES = {
    "all": ("🧪 Running full test suite...", [str(TEST_DIR), "--tb=short"]),
    "unit": ("🔬 Running unit tests...", [str(TEST_DIR / "unit"), "-m", "unit"]),
    "integration": (
        "🔗 Running integration tests...",
        [str(TEST_DIR / "integration"), "-m", "integration"],
    ),
    "memory": ("🧠 Running memory tests...", [str(TEST_DIR), "-m", "requires_memory"]),
    "mcp": ("🛠  Running MCP tests...", [str(TEST_DIR), "-m", "requires_mcp"]),
}


def run_suite(name: str) -> bool:
    banner, args = SUITES[name]
    print(banner)
    result = subprocess.run([sys.executable, "-m", "pytest", "-v", *args])
    if result.returncode != 0:
        print(f"❌ {name} tests failed!")
        return False
    print(f"✅ {name} tests passed!\n")
    return True


def run_tests(suites: list[str]) -> bool:
    """Run the given suites in order, stopping at the first failure."""
    for name in suites:
        if not run_suite(name):
            return False

    print("🎉 All tests passed successfully!")
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run Cogitap tests")
    parser.add_argument(
        "suites",
        nargs="*",
        help=f"Suites to run, from: {', '.join(SUITES)} (default: all, unit, integration)",
    )
    suites = parser.parse_args().suites or ["all", "unit", "integration"]
    unknown = [name for name in suites if name not in SUITES]
    if unknown:
        parser.error(f"unknown suites: {', '.join(unknown)}")
    success = run_tests(suites)
    sys.exit(0 if success else 1)
