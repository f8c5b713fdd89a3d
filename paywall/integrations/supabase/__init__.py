"""
Supabase integration module.
"""

from paywall.integrations.supabase.client import (
    SupabaseAPIError,
    SupabaseClient,
    SupabaseError,
    get_supabase_client,
)

__all__ = ["SupabaseAPIError", "SupabaseClient", "SupabaseError", "get_supabase_client"]
