"""
API Gateway Service package for the Access Layer.

The gateway fronts client requests, enforcing:
- Identity resolution: bearer JWTs checked against the user directory,
  with network origin as the fallback identity
- Request admission: a shared token bucket per identity, failing open
  when the bucket store is unavailable

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.adapters: HTTP clients for internal services.
- app.auth: Identity resolution.
- app.ratelimit: Token bucket and bucket stores.
- app.domain: Cross-cutting request handling (admission gate).
"""
