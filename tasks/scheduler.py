# tasks/scheduler.py
from flask_apscheduler import APScheduler

from config import Config
from services.settings import get_setting
from tasks.circulation_jobs import run_circulation_jobs, send_monthly_report

scheduler = APScheduler()

CIRCULATION_JOB_ID = "circulation-daily-job"
MONTHLY_REPORT_JOB_ID = "monthly-report-job"


def _get_job_settings():
    """Job time of day from system_settings, falling back to Config."""
    return {
        "hour": int(get_setting("circulation_job_hour", Config.CIRCULATION_JOB_HOUR)),
        "minute": int(get_setting("circulation_job_minute", Config.CIRCULATION_JOB_MINUTE)),
    }


def _run_circulation_job(app):
    """Wrapper to ensure the daily job runs inside Flask app context."""
    with app.app_context():
        try:
            run_circulation_jobs(app)
        except Exception as e:
            app.logger.error(f"❌ Scheduled circulation job failed: {e}", exc_info=True)


def _run_monthly_report(app, mail):
    with app.app_context():
        try:
            send_monthly_report(app, mail)
        except Exception as e:
            app.logger.error(f"❌ Scheduled monthly report failed: {e}", exc_info=True)


def _register_jobs(app, mail, settings: dict):
    """Register or re-register the jobs based on settings."""
    for job_id in (CIRCULATION_JOB_ID, MONTHLY_REPORT_JOB_ID):
        if scheduler.get_job(job_id):
            scheduler.remove_job(job_id)

    scheduler.add_job(
        id=CIRCULATION_JOB_ID,
        func=lambda: _run_circulation_job(app),
        trigger="cron",
        hour=settings["hour"],
        minute=settings["minute"],
        replace_existing=True,
    )
    app.logger.info(f"📅 Daily circulation job registered at {settings['hour']:02d}:{settings['minute']:02d}")

    scheduler.add_job(
        id=MONTHLY_REPORT_JOB_ID,
        func=lambda: _run_monthly_report(app, mail),
        trigger="cron",
        day=1,
        hour=settings["hour"],
        minute=settings["minute"],
        replace_existing=True,
    )
    app.logger.info("📅 Monthly report job registered on day 1")


def register_scheduler(app, mail):
    """Initialize and start the APScheduler with current settings."""
    scheduler.init_app(app)
    with app.app_context():
        settings = _get_job_settings()
    _register_jobs(app, mail, settings)
    scheduler.start()
    app.logger.info("✅ APScheduler started successfully.")
    return scheduler


def reload_scheduler(app, mail):
    """Reload jobs after an admin changes the job time."""
    settings = _get_job_settings()
    _register_jobs(app, mail, settings)
    app.logger.info(f"🔄 Scheduler reloaded with settings: {settings}")
    return settings
