"""
Administrative API routes.

- sync: sync jobs (start, list, SSE progress) and cursor management
- notifications: webhook subscriptions and threshold alerts
"""
