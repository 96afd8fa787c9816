"""Message ingestion pipeline."""

from .pipeline import IngestionPipeline

__all__ = ["IngestionPipeline"]
