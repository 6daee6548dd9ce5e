"""Domain services: credit ledger, identities, sites, licenses, subscriptions, webhooks."""
