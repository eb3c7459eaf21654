"""
Gunicorn Configuration

Production settings for the Contest Engine API.

    gunicorn -c deploy/gunicorn.conf.py contest_engine.main:app

Leaderboards are held in memory per worker. Without FEATURE_REDIS_BROADCAST
the server runs a single worker; with it, workers relay score events to each
other over Redis and WEB_CONCURRENCY (default cpu_count * 2 + 1) applies.
Pinned leaderboard versions are numbered per worker, so clients paging with
`version` need sticky routing when more than one worker runs.
"""
import os
import multiprocessing

relay_enabled = os.environ.get("FEATURE_REDIS_BROADCAST", "false").lower() in ("true", "1", "yes", "on", "enabled")

# Server socket
bind = os.environ.get("BIND", "0.0.0.0:8000")
backlog = 2048

# Worker processes
if relay_enabled:
    workers = int(os.environ.get("WEB_CONCURRENCY", multiprocessing.cpu_count() * 2 + 1))
else:
    workers = 1
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
timeout = 120
keepalive = 5

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = "contest-engine"

# Server mechanics
daemon = False
pidfile = "/tmp/contest-engine.pid"

# Security
limit_request_line = 4094
limit_request_fields = 100
limit_request_field_size = 8190


def when_ready(server):
    """Called just after the server is started."""
    server.log.info(f"contest-engine ready with {workers} workers")
