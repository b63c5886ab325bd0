"""WhatsApp notification worker for a school attendance system.

This package provides the background worker that delivers queued attendance
notifications to parents and class groups:

- Single WhatsApp session with QR pairing and persisted multi-file credentials
- Queue consumer with atomic claiming and randomised pacing between sends
- Stuck-job reclaimer for jobs abandoned in ``processing``
- Daily unattended-student reports and month-end PDF recaps
- Manual recap triggers
- Prometheus metrics and a small FastAPI control API

Example:
    Basic usage with the FastAPI application::

        from attendance_notifier.core import NotificationCore
        from attendance_notifier.api import create_app

        core = NotificationCore(db_path="/data/attendance.db")
        app = create_app(core, api_token="secret")
"""

__version__ = "0.3.0"
