"""
Gunicorn Configuration

Production settings for the Defense Evaluation API.

    gunicorn defense_eval.main:app -c deploy/gunicorn.conf.py
"""
import os
import multiprocessing

# Server socket
bind = os.environ.get("BIND", "0.0.0.0:8000")
backlog = 2048

# Worker processes; a SQLite database serialises writers across them
workers = int(os.environ.get("WEB_CONCURRENCY", multiprocessing.cpu_count() * 2 + 1))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
keepalive = 5

# Must outlive TRANSACTION_TIMEOUT_SECONDS so a slow submission rolls back
# and answers 503 before the worker is killed
timeout = max(30, int(float(os.environ.get("TRANSACTION_TIMEOUT_SECONDS", "15")) * 2))
graceful_timeout = timeout

# Logging
accesslog = os.environ.get("GUNICORN_ACCESS_LOG", "-")
errorlog = os.environ.get("GUNICORN_ERROR_LOG", "-")
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = "defense-eval"

# Server mechanics
daemon = False
pidfile = "/tmp/defense-eval-gunicorn.pid"

# Security
limit_request_line = 4094
limit_request_fields = 100
limit_request_field_size = 8190


def when_ready(server):
    server.log.info(f"Defense Evaluation API ready on {bind} with {workers} workers")


def worker_int(worker):
    worker.log.info(f"Worker {worker.pid} interrupted; open transactions roll back")
