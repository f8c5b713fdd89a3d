"""
Business logic services.

- payment_service: card-processor checkout initiation
- receipt_validator: remote receipt validation
- purchase_reconciliation: platform purchase event handling
"""
