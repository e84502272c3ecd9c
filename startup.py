#!/usr/bin/env python
"""
Production launcher: runs the dashboard under gunicorn.
Worker and thread counts come from GUNICORN_WORKERS / GUNICORN_THREADS.
"""

import os
import sys
from pathlib import Path

# Set working directory
os.chdir(Path(__file__).parent)

# Add current directory to path
sys.path.insert(0, str(Path(__file__).parent))

from gunicorn.app.wsgiapp import run

if __name__ == '__main__':
    # Registration runs can take minutes because of the pacing between records
    sys.argv = [
        'gunicorn',
        f"--workers={os.getenv('GUNICORN_WORKERS', '2')}",
        '--worker-class=gthread',
        f"--threads={os.getenv('GUNICORN_THREADS', '4')}",
        f"--timeout={os.getenv('GUNICORN_TIMEOUT', '600')}",
        '--bind=0.0.0.0:' + os.getenv('PORT', '8000'),
        '--access-logfile=-',
        '--error-logfile=-',
        'wsgi:app'
    ]
    sys.exit(run())
