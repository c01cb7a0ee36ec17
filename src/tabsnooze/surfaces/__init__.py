"""Restoration surfaces and notification sinks.

The scheduler only talks to the protocols in ``base``; ``browser`` provides
the implementations used by the command-line daemon.
"""
