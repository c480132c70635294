"""
AI Pair — unattended generate → build → test remediation loop.
"""

from aipair.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
