"""Persisted harvest run model."""

from sqlalchemy import JSON, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from harvester.models.base import Base, CreatedAtMixin, IdMixin, UpdatedAtMixin


class HarvestRun(Base, IdMixin, CreatedAtMixin, UpdatedAtMixin):
    """One harvesting run: its full loop state stored as a JSON document."""

    __tablename__ = "harvest_runs"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="running", index=True, nullable=False)
    steps_completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    state_json: Mapped[dict[str, object]] = mapped_column(JSON, default=dict, nullable=False)
