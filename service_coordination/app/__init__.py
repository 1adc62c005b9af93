"""
Coordination service package.

Cross-process concurrency control for the platform, on top of one shared
key/value store:
- Mutex: exclusive sections keyed by domain identifiers (orders, payouts,
  export requests), with TTL as a dead-holder safety net.
- Rate limiting: call counters for sensitive endpoints and fixed-window
  per-identity budgets at the HTTP boundary.
- Response caching: memoization of slow anonymous GraphQL responses.

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.store: Store clients and the process-wide registry.
- app.locking: Distributed mutex.
- app.ratelimit: Counters, fixed-window limiter and middleware.
- app.caching: Response cache policy and middleware.
"""
