"""
Devspin - a local development-environment orchestrator.

Starts the services declared in a project file in dependency order, tracks
their processes, waits for readiness, and keeps a persistent record so later
commands can query and stop what is running.
"""

__version__ = "0.1.0"
