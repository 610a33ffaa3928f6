"""
cache/ -- Redis-backed volatile state: the shared client and the rate limiter.

Everything stored here is allowed to disappear. Counters and cached sessions
carry their own TTL; the durable copy of a session lives in SQL.
"""
