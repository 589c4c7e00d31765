"""SQLAlchemy base declaration for the backfill job tables."""
from sqlalchemy.orm import declarative_base

# Shared metadata registry for jobs and checkpoints
Base = declarative_base()
