import logging
import os

from dmarc_sender.cli import main

# Configure logging level from environment
log_level = os.getenv("DMARC_SENDER_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


if __name__ == "__main__":
    main()
