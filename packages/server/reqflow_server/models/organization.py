"""Organization model (tenant boundary, soft-disabled rather than deleted)."""

from sqlmodel import Field, SQLModel
import sqlalchemy as sa

from .base import TimestampMixin, UUIDMixin


class Organization(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "organizations"

    name: str = Field(nullable=False, index=True)
    slug: str = Field(unique=True, nullable=False, index=True)
    plan: str = Field(default="free", nullable=False)  # free | starter | professional | enterprise
    status: str = Field(default="trial", nullable=False)  # trial | active | suspended | cancelled
    max_users: int = Field(default=3, nullable=False)
    max_projects: int = Field(default=3, nullable=False)
    max_requisitions_per_month: int = Field(default=25, nullable=False)
    settings: dict = Field(default_factory=dict, sa_type=sa.JSON, nullable=False)
