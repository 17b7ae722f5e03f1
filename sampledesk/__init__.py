"""SampleDesk: training-data ingestion, embeddings and semantic search."""

__version__ = "0.1.0"
