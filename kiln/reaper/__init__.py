"""
Reaper module.
Contains the lease reaper for recovering expired tasks.
"""

from kiln.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
