"""
Shared plumbing for the tour services: config, errors, timers, the tour
content cache, artwork loading, lifecycle events, systemd watchdog.
"""
