"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Poll fallback. Fires every 15 minutes but only drains while the queue
    # is armed (see services.sync_queue).
    'drain-sync-queue': {
        'task': 'tasks.drain_sync_queue',
        'schedule': crontab(minute='*/15'),
    },
    # Re-arm polling if Strava webhooks have gone quiet - daily at 3 AM UTC
    'check-webhook-health': {
        'task': 'tasks.check_webhook_health',
        'schedule': crontab(hour=3, minute=0),
    },
    # Club-wide totals for COMMUNITY challenges - hourly
    'recompute-community-challenges': {
        'task': 'tasks.recompute_community_challenges',
        'schedule': crontab(minute=0),
    },
}
