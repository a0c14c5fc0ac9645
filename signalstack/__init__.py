"""signalstack – polled upstream data with stale-while-revalidate caching.

Fetches quotes, movers, whale flow, insider filings, sentiment, surge
scans, bot telemetry and exit-intelligence positions from the upstream
API, keeps the last good value per ``FetchKey`` in an in-memory cache,
and joins cached records into per-symbol composite views.

Polling runs in a background thread (``PollScheduler``) that fans out to
the cache's worker pool.  Readers never block: they get the last good
value plus a staleness flag.
"""
