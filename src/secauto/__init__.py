"""
SecAuto: Security Automation Orchestration

Stores declarative security playbooks, routes events to them and to
automated responses, and runs policy and compliance checks on
independent timers.
"""

__version__ = "0.1.0"

from secauto.config.settings import Settings

__all__ = ["Settings", "__version__"]
