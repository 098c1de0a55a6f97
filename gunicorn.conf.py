import os

bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")
worker_class = "uvicorn.workers.UvicornWorker"
# Progress subscribers only see runs started in their own worker process;
# raise this only together with REDIS_CACHE_ENABLED=true for cross-worker run locks.
workers = int(os.getenv("GUNICORN_WORKERS", "1"))
threads = int(os.getenv("GUNICORN_THREADS", "2"))
# SSE progress streams stay open for the whole run
timeout = int(os.getenv("GUNICORN_TIMEOUT", "0"))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")
accesslog = "-"
errorlog = "-"
forwarded_allow_ips = "*"

# Structured logging passthrough
capture_output = True

worker_tmp_dir = "/dev/shm"


def on_exit(server):
    server.log.info("Gunicorn master shutting down")


def worker_exit(server, worker):
    server.log.info("Worker exiting, in-flight sync runs are abandoned", extra={"pid": worker.pid})
