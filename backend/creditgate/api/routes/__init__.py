# API routes
from creditgate.api.routes import health
from creditgate.api.routes import usage
from creditgate.api.routes import credits
from creditgate.api.routes import billing
from creditgate.api.routes import webhooks_stripe

__all__ = ["health", "usage", "credits", "billing", "webhooks_stripe"]
