# API routes
from paywall.api.routes import webhooks_validation
