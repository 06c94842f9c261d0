from scheduler import build_scheduler, start_scheduler


def test_jobs_are_registered(app):
    scheduler = build_scheduler(app)

    jobs = {job.id: job for job in scheduler.get_jobs()}
    assert set(jobs) == {"automation_tick", "automation_retries", "automation_stale_claims"}
    assert jobs["automation_tick"].max_instances == 1
    assert jobs["automation_tick"].coalesce is True


def test_job_runs_inside_app_context(app):
    scheduler = build_scheduler(app)
    # no tenants yet: the tick completes without touching any transport
    scheduler.get_job("automation_tick").func()
    scheduler.get_job("automation_stale_claims").func()


def test_scheduler_disabled_in_testing(app):
    assert start_scheduler(app) is None
