"""
crmkit Configuration
Loads settings from environment variables with sensible defaults.
"""

import logging
import os
from pathlib import Path
from dotenv import load_dotenv

_logger = logging.getLogger(__name__)

# Load .env file
env_path = Path(__file__).parent.parent / '.env'
load_dotenv(env_path)


class Config:
    """Application configuration."""

    # Database - must be set in .env; never hardcode credentials here
    DATABASE_URL = os.getenv('DATABASE_URL')
    if not DATABASE_URL:
        _logger.critical("DATABASE_URL is not set, cannot start. Copy .env.example to .env and configure it.")
        raise ValueError("DATABASE_URL environment variable is not set. Copy .env.example to .env and configure it.")

    # Owner identity used by the CLI when no --user is given
    CRM_USER_ID = os.getenv('CRM_USER_ID') or None

    # Query Layer paging
    DEFAULT_PAGE_SIZE = int(os.getenv('DEFAULT_PAGE_SIZE', '10'))
    RECENT_ACTIVITY_LIMIT = int(os.getenv('RECENT_ACTIVITY_LIMIT', '5'))
    DETAIL_ACTIVITY_LIMIT = int(os.getenv('DETAIL_ACTIVITY_LIMIT', '10'))

    # Pipeline columns created for a new user, left to right
    DEFAULT_DEAL_STAGES = [
        s.strip() for s in os.getenv('DEFAULT_DEAL_STAGES', 'Lead,In Progress,Won,Lost').split(',')
        if s.strip()
    ]


# Singleton instance
config = Config()
