"""
Authentication module.

Provides SessionProvider implementations that resolve the current user.
"""

from paywall.auth.session import (
    SessionProvider,
    StaticSessionProvider,
    SupabaseSessionProvider,
)

__all__ = ["SessionProvider", "StaticSessionProvider", "SupabaseSessionProvider"]
