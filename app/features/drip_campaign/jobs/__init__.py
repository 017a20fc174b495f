"""
Job runners for the drip campaign feature.
"""

from .drip_worker import run_drip_worker

__all__ = ["run_drip_worker"]
