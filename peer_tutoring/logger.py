import logging
import sys
import json
from datetime import datetime, timezone
from pathlib import Path
from peer_tutoring.config import get_settings

LOGS_DIR = Path(get_settings().logs_dir)

# Create logs directory if it doesn't exist
LOGS_DIR.mkdir(parents=True, exist_ok=True)

# Configure logging
def setup_logger(name: str = "server"):
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)

    # Module may be imported more than once under test runners
    if logger.handlers:
        return logger

    # Create formatters
    file_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_formatter = logging.Formatter(
        '%(levelname)s: %(message)s'
    )

    # Create handlers
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(logging.INFO)

    # Create file handler
    file_handler = logging.FileHandler(
        LOGS_DIR / f"server_{datetime.now().strftime('%Y%m%d')}.log"
    )
    file_handler.setFormatter(file_formatter)
    file_handler.setLevel(logging.INFO)

    # Add handlers to logger
    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    return logger

class AuditLogger:
    """Writes one JSON line per session lifecycle event (create, join, leave, ...)."""

    def __init__(self):
        self.logger = logging.getLogger('session_audit')
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False
        if not self.logger.handlers:
            handler = logging.FileHandler(LOGS_DIR / 'session_audit.log')
            handler.setFormatter(logging.Formatter('%(asctime)s - %(message)s'))
            self.logger.addHandler(handler)

    def log_event(self, event_type: str, user_id: str, details: dict):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "user_id": user_id,
            "details": details
        }
        self.logger.info(json.dumps(log_entry, default=str))

# Create global logger instances
# Use single logger instance across all files
logger = setup_logger()
audit_logger = AuditLogger()
