# backend/gunicorn_conf.py

import os

# Gunicorn config for chatflow.main:app

bind = os.getenv("BIND", "0.0.0.0:8000")
# More than one worker needs USE_REDIS_LOCKS=true, per-customer locks are otherwise process-local
workers = int(os.getenv("WORKERS", "1"))
worker_class = "uvicorn.workers.UvicornWorker"

# Settings for running behind a reverse proxy like Nginx
forwarded_allow_ips = "*"

# Send access and error logs to stdout and stderr
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
