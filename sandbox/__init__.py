"""Sandbox module for compiling and running candidate programs.

This module provides the Tester protocol and the RustTester that builds an
artifact in a throwaway directory and runs its embedded tests.
"""

from sandbox.tester import CommandResult, RustTester, Tester, run_command

__all__ = ["CommandResult", "RustTester", "Tester", "run_command"]
