"""
ClawRelay - auto-reply relay between messaging channels and local commands.
"""

__version__ = "0.1.0"
__logo__ = "📡"
