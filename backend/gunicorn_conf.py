# backend/gunicorn_conf.py

# Gunicorn config for the leadflow API:
#   gunicorn -c gunicorn_conf.py leadflow.main:app

import os

bind = f"0.0.0.0:{os.getenv('PORT', '8000')}"
workers = int(os.getenv("WORKERS", "2"))
worker_class = "uvicorn.workers.UvicornWorker"

# Background message tasks need time to finish on reload/shutdown
graceful_timeout = 30

# Settings for running behind a reverse proxy like Nginx
forwarded_allow_ips = "*"

# --- Logging ---
accesslog = "-"
errorlog = "-"
loglevel = "info"
