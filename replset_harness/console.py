"""Shared rich console for harness progress and diagnostics."""

from rich.console import Console

# Configure rich console for harness output
console = Console(stderr=True, highlight=False)


def set_quiet(quiet: bool) -> None:
    """Silence (or re-enable) all harness console output."""
    console.quiet = quiet
