"""Import all models so SQLAlchemy metadata knows about them."""
from taxqueue.models.base import Base
from taxqueue.models.job import Job

__all__ = ["Base", "Job"]
