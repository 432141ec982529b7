"""
Worker entrypoint. Run with:
    celery -A celery_app worker -Q media,maintenance -l info
    celery -A celery_app beat -l info
"""
from celery_app import app

if __name__ == "__main__":
    app.worker_main(["worker", "-Q", "default,media,maintenance", "-l", "info"])
