"""Scheduler adapters for driving the billing run.

Implementations support multiple scheduling strategies:
- Daemon (asyncio event loop with configurable interval)
- Single run (one pass, for cron or Kubernetes CronJob)
"""
