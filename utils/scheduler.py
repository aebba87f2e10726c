from __future__ import annotations

import os

from apscheduler.schedulers.background import BackgroundScheduler

# Shared by the periodic OTP purge and fire-and-forget mail delivery.
# Started/stopped by main.py; jobs added before start() run once it starts.
scheduler = BackgroundScheduler(timezone=os.getenv("TZ", "UTC"))
