"""Topology CLI: dependency graph and change-risk analysis for source trees."""

__version__ = "0.3.0"
