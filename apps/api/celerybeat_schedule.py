"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Tomorrow's planned classes go onto every connected user's stack
    # the evening before (UTC), so they are waiting on the bike.
    'push-scheduled-stacks': {
        'task': 'tasks.push_scheduled_stacks',
        'schedule': crontab(hour=22, minute=0),  # Daily
    },
}
