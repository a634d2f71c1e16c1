"""Console output formatting utilities for stepcache."""

from __future__ import annotations

import sys
from typing import Dict, List, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-step lines (results and errors still print)
        """
        self.debug = debug
        self.quiet = quiet

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, plan: str, step_count: int, stale_count: int) -> None:
        """Print run start information."""
        if self.quiet:
            return
        print("\nRUN STARTED")
        print(f"Plan: {plan}")
        print(f"Steps: {step_count} ({stale_count} to build)")
        print()

    def print_step_built(self, name: str, duration: float) -> None:
        if not self.quiet:
            print(f"BUILT: {name} ({duration:.2f}s)")

    def print_step_cached(self, name: str) -> None:
        if not self.quiet:
            print(f"CACHED: {name}")

    def print_step_failed(self, name: str, reason: str) -> None:
        """Print step failure, first line only unless debug."""
        print(f"FAILED: {name}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            print(f"Error: {error_line}")

    def print_step_blocked(self, name: str, by: str) -> None:
        if not self.quiet:
            print(f"BLOCKED: {name} (upstream {by} failed)")

    def print_stages(self, levels: List[List[str]], states: Dict[str, str]) -> None:
        """Print plan stages with the state of each step."""
        for idx, level in enumerate(levels):
            print(f"=== Stage {idx + 1} ===")
            for name in level:
                print(f"  {name}: {states.get(name, '?')}")

    def print_outdated(self, reasons: Dict[str, str]) -> None:
        if not reasons:
            print("All steps are up to date.")
            return
        for name, reason in reasons.items():
            print(f"  {name} ({reason})")

    def print_results(self, results: Dict[str, str]) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for name, status in results.items():
            print(f"  {name}: {str(status).upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
