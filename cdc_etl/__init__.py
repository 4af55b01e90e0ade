"""
cdc_etl package - change-data-capture ETL pipeline

Expose the pipeline and its configuration.
"""
from .config import PipelineConfig
from .pipeline import ETLPipeline

__all__ = ["ETLPipeline", "PipelineConfig"]
