"""
Paywall: entitlement resolution and purchase reconciliation.

Resolves whether a user currently holds premium access, how many tracked
resources they may create, and reconciles platform in-app purchase events
into the server-side subscription record.
"""

__version__ = "0.1.0"
