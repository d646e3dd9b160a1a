"""Orchestrator module for running a convergence."""

from eb_converge.orchestrator.driver import ConvergenceDriver, RunSummary

__all__ = [
    'ConvergenceDriver',
    'RunSummary',
]
