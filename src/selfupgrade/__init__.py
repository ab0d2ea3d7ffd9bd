"""
selfupgrade - Self-update orchestrator for command-line tools
"""

__version__ = "0.3.0"

from .core import UpgradeOrchestrator, UpgraderError

__all__ = ["UpgradeOrchestrator", "UpgraderError"]
