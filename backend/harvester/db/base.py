"""SQLAlchemy metadata registry import for Alembic."""

from harvester.models import HarvestRun
from harvester.models.base import Base

__all__ = ["Base", "HarvestRun"]
