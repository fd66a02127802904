"""
PHASEKEEPER — resilient execution-state engine for multi-phase tasks
driven by an unreliable external actor.
"""

from phasekeeper.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
