"""
Gunicorn configuration for production deployment.

Run with: gunicorn -c gunicorn.conf.py botportal.main:app
"""
import os
import multiprocessing

# Server Socket
bind = f"0.0.0.0:{os.getenv('PORT', '8000')}"
backlog = 2048

# Worker Processes
workers = int(os.getenv('WEB_CONCURRENCY', multiprocessing.cpu_count() * 2 + 1))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 1000
max_requests_jitter = 50
timeout = 30
keepalive = 2

# Agent calls run after the response; workers need time to drain them
graceful_timeout = int(os.getenv('BACKGROUND_DRAIN_TIMEOUT_SECONDS', '30')) + 10

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.getenv('LOG_LEVEL', 'info')
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process Naming
proc_name = 'botportal'

# Server Mechanics
daemon = False
pidfile = '/tmp/botportal-gunicorn.pid'


def when_ready(server):
    """Called just after the server is started."""
    server.log.info("Bot portal ready, spawning workers")


def worker_int(worker):
    """Called just after a worker exited on SIGINT or SIGQUIT."""
    worker.log.info("Worker interrupted, draining background work")


def worker_abort(worker):
    """Called when a worker received the SIGABRT signal."""
    worker.log.warning("Worker aborted; queued replies are recovered by clients via status polling")
