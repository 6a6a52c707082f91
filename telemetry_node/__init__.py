"""
Telemetry Sync Node
Polls crowd, parking and traffic vendors and tracks device online state.
"""

__version__ = "1.0.0"
