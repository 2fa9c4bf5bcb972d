"""
Core package for shared utilities.

This module makes the core directory a Python package, enabling proper
import resolution for configuration and logging shared across the backend.
"""
