# File: tests/run_tests.py
#!/usr/bin/env python3
"""
Test runner for SwapHub tests.

    python -m tests.run_tests                        # everything
    python -m tests.run_tests unit.test_swap_service  # one module
    python -m tests.run_tests unit.test_swap_service.TestCancelAndDispute
"""

import unittest
import sys
from pathlib import Path


def run_all_tests():
    """Run all test suites"""
    test_loader = unittest.TestLoader()
    start_dir = str(Path(__file__).parent)
    top_level_dir = str(Path(__file__).parent.parent)

    test_suite = test_loader.discover(start_dir, pattern='test_*.py', top_level_dir=top_level_dir)

    test_runner = unittest.TextTestRunner(verbosity=2)
    return test_runner.run(test_suite)


def run_specific_test(test_name):
    """Run a specific test module or test case"""
    test_loader = unittest.TestLoader()
    test_suite = test_loader.loadTestsFromName(f'tests.{test_name}')

    test_runner = unittest.TextTestRunner(verbosity=2)
    return test_runner.run(test_suite)


if __name__ == "__main__":
    if len(sys.argv) > 1:
        result = run_specific_test(sys.argv[1])
    else:
        result = run_all_tests()

    sys.exit(0 if result.wasSuccessful() else 1)
