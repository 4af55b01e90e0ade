"""
main.py - Main entry point for the CDC ETL pipeline
"""
import logging

import uvicorn

from cdc_etl.config import get_config
from cdc_etl.rest_api import create_api


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main():
    """
    Start the pipeline and its administrative API.
    """
    config = get_config()
    setup_logging(config.log_level)
    logger = logging.getLogger(__name__)

    api = create_api(config)
    app = api.get_app()

    logger.info("Starting CDC ETL pipeline on %s:%d", config.api_host, config.api_port)
    logger.info("Source: %s (%s)", config.source_uri, ", ".join(config.source_collections))
    logger.info("Queue: %s [%s], warehouse: %s", config.queue_uri, config.queue_name, config.warehouse_path)

    uvicorn.run(app, host=config.api_host, port=config.api_port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
