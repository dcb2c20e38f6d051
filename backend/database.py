"""
Supabase connection for the metrics API.

Uses the Supabase REST client; every metrics query goes through the
execute_metrics_query_array RPC, so no direct Postgres connection is needed.
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

SUPABASE_URL = os.environ.get('SUPABASE_URL')
SUPABASE_KEY = os.environ.get('SUPABASE_SERVICE_KEY')
DB_AVAILABLE = bool(SUPABASE_URL and SUPABASE_KEY)

_supabase_client = None


def get_supabase():
    """Lazy-initialize the shared Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if not DB_AVAILABLE:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
        from supabase import create_client
        _supabase_client = create_client(SUPABASE_URL.strip(), SUPABASE_KEY.strip())
        logger.info("Supabase client initialized")
    return _supabase_client
