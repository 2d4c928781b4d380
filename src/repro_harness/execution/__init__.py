"""Execution infrastructure.

Provides the ``RunOrchestrator`` that drives a test run through build,
staging, guarding, running and collecting.
"""

from .orchestrator import RunOrchestrator

__all__ = ["RunOrchestrator"]
