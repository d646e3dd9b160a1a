"""Command line interface for eb-converge."""
