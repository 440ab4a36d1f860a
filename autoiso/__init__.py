"""AutoISO: build a bootable live ISO from the running system.

Core design goals:
- State-driven and resumable (one checkpoint per stage)
- Never pull foreign mounts into the staging tree
- Every bind mount and helper process released on every exit path
- Centralized logging
"""

__version__ = "3.2.0"

__all__ = ["__version__"]
