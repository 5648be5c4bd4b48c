"""ORM models package exports."""

from harvester.models.harvest_run import HarvestRun

__all__ = ["HarvestRun"]
