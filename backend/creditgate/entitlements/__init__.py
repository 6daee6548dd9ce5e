"""
Entitlement resolution.

Modules:
- loader: plan catalog (config/plans.yml)
- subscription_state: provider status normalization and plan limits
- resolver: ordered quota-source strategies
- cache: short-TTL response cache
- service: request-facing facade
- errors: structured error classes

Import from the submodules directly; this package does not re-export so
that services can import errors without pulling in the resolver.
"""
