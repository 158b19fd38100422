#!/usr/bin/env python3
"""Development service runner"""
import os
import time
import atexit

from keepsafe import create_service
from keepsafe.scheduler import init_scheduler, start_scheduler, stop_scheduler, sync_jobs

if __name__ == '__main__':
    # Use development config for local testing
    service = create_service(os.environ.get('KEEPSAFE_ENV', 'development'))

    init_scheduler(service)
    start_scheduler()
    sync_jobs(service)
    atexit.register(stop_scheduler)

    # Pick up plan file edits
    try:
        while True:
            time.sleep(service.config['SCHEDULER_POLL_SECONDS'])
            sync_jobs(service)
    except KeyboardInterrupt:
        pass
